"""
===============================================================================
ATTITUDE EKF - Core Utilities
===============================================================================
Shared math and definitions used across the package.

Modules:
    rotation    -- Skew matrices, exponential/log maps, orthonormalization
    constants   -- Physical constants and default simulation parameters
    exceptions  -- Estimator error hierarchy
===============================================================================
"""

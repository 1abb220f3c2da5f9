"""
===============================================================================
ATTITUDE EKF - Simulation
===============================================================================
Closed-loop simulation harness for the estimators.

Modules:
    noise       -- Zero-mean Gaussian sampling
    truth       -- Oscillating truth trajectory and step context
    config      -- YAML configuration loading and typed settings
    sim_engine  -- AttitudeSimulation time-stepped loop
===============================================================================
"""

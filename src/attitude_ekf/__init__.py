"""
===============================================================================
ATTITUDE EKF
===============================================================================
Attitude and sensor-bias estimation with an Extended Kalman Filter built from
pluggable process and sensor models, plus a multiplicative attitude
correction and a closed-loop simulation harness.

Subpackages:
    core          -- Rotation utilities, constants, exception hierarchy
    navigation    -- Models, Kalman filter engine, attitude correction
    simulation    -- Truth trajectory, noise, configuration, sim engine
    telemetry     -- Per-step signal log
    visualization -- Post-run estimation plots
===============================================================================
"""

__version__ = "0.1.0"

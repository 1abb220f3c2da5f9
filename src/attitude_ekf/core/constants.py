"""
===============================================================================
ATTITUDE EKF - Physical Constants and Simulation Defaults
===============================================================================
Central repository for the constants used by the sensor models and the
simulation driver. SI units throughout (meters, seconds, radians).

The navigation frame is z-up, so gravity points along -z.
===============================================================================
"""

import numpy as np


# =============================================================================
# MATHEMATICAL CONSTANTS
# =============================================================================
PI = np.pi
TWO_PI = 2.0 * np.pi
DEG2RAD = PI / 180.0
RAD2DEG = 180.0 / PI

# =============================================================================
# EARTH ENVIRONMENT
# =============================================================================
STANDARD_GRAVITY = 9.81                                   # m/s^2
GRAVITY_NAV = np.array([0.0, 0.0, -STANDARD_GRAVITY])     # m/s^2, z-up frame

# Normalized reference magnetic field in the navigation frame. Only the
# direction matters to the magnetometer model.
MAGNETIC_FIELD_NAV = np.array([1.0, 0.0, 0.0])

# =============================================================================
# SIMULATION DEFAULTS
# =============================================================================
DEFAULT_DT = 0.01              # s
DEFAULT_DURATION = 10.0        # s

# Truth oscillation: w_bn(t) = cos(2*pi*f*t + phi)
DEFAULT_OSCILLATION_FREQUENCY = np.array([1.0, 2.0, 3.0]) / 20.0   # Hz
DEFAULT_OSCILLATION_PHASE_DEG = np.array([0.0, 45.0, 90.0])       # deg

# =============================================================================
# FILTER NUMERICS
# =============================================================================
MAX_INNOVATION_CONDITION_NUMBER = 1.0e12
PSD_TOLERANCE = 1.0e-9
NIS_SIGNIFICANCE = 0.001

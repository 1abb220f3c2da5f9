"""
===============================================================================
ATTITUDE EKF - Visualization
===============================================================================
Submodules:
    estimation_plots -- Attitude error and bias estimate history plots
===============================================================================
"""

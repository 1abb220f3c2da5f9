"""
===============================================================================
ATTITUDE EKF - Navigation Subsystem
===============================================================================
State estimation from pluggable models.

Modules:
    environment     -- StateLayout partitions and the ModelEnvironment snapshot
    models          -- Model / SensorModel / ProcessModel interface
    sensors         -- Gyroscope, accelerometer, magnetometer, attitude sensor
    process_models  -- Bias random walk and attitude-deviation dynamics
    kalman_filter   -- EKF engine (stacked updates, Joseph form)
    attitude        -- Multiplicative attitude correction
===============================================================================
"""

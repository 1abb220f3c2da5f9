"""
===============================================================================
ATTITUDE EKF - Telemetry
===============================================================================
Submodules:
    telemetry_log -- TelemetryLog signal recorder with CSV export via pandas
===============================================================================
"""

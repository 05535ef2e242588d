import os

# Security Settings
SECURITY_SETTINGS = {
    "rate_limit_calls": 5,
    "rate_limit_period": 60  # seconds
}

# Config download retries against the panel
DOWNLOAD_SETTINGS = {
    "rounds": 3,
    "backoff_step": 0.25  # seconds, multiplied by the round number
}

# Cleanup Settings
CLEANUP_SETTINGS = {
    "sweep_interval": 3600,  # deactivate expired links every hour
    "retry_delay": 300
}

# Monitoring Settings
MONITOR_SETTINGS = {
    "interval": 300,
    "retry_delay": 60,
    "disk_warning_percent": 90,
    "memory_warning_percent": 90
}

# Performance Settings
PERFORMANCE_SETTINGS = {
    "request_timeout": 30
}

# Download server
SERVER_SETTINGS = {
    "host": os.getenv("SERVICE_MANAGER_HOST", "0.0.0.0"),
    "port": int(os.getenv("SERVICE_MANAGER_PORT", "3000"))
}

# Path Settings
PATH_SETTINGS = {
    "data_dir": "data",
    "log_dir": os.getenv("LOG_DIR", "logs")
}

from .config import (
    AccountPoolConfig,
    AdaptiveDelayConfig,
    Config,
    ConsumerConfig,
    MonitoringConfig,
    RateMonitoringConfig,
    RobotsConfig,
    StatsConfig,
    WebConfig,
    find_config_file,
)

__all__ = [
    "AccountPoolConfig",
    "AdaptiveDelayConfig",
    "Config",
    "ConsumerConfig",
    "MonitoringConfig",
    "RateMonitoringConfig",
    "RobotsConfig",
    "StatsConfig",
    "WebConfig",
    "find_config_file",
]

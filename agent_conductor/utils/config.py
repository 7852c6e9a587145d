"""
Configuration management for Agent Conductor.
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "CONDUCTOR_"


class SchedulingPolicy(str, Enum):
    """Order in which ready tasks are dispatched."""
    FIFO = "fifo"
    PRIORITY = "priority"


class BalancingStrategyName(str, Enum):
    """Agent selection strategies understood by the load balancer."""
    ROUND_ROBIN = "round-robin"
    WEIGHTED = "weighted"
    LEAST_CONNECTIONS = "least-connections"
    RESPONSE_TIME = "response-time"


class HealthCheckConfig(BaseModel):
    """Configuration for periodic agent probes."""
    enabled: bool = Field(default=True)
    interval_seconds: float = Field(default=10.0, gt=0.0, le=3600.0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0, le=600.0)
    unhealthy_threshold: int = Field(default=3, ge=1, le=100)


class LoadBalancerConfig(BaseModel):
    """Configuration for agent selection and agent-level retries."""
    strategy: BalancingStrategyName = Field(default=BalancingStrategyName.LEAST_CONNECTIONS)
    max_agent_retries: int = Field(default=2, ge=0, le=10)
    agent_retry_delay_seconds: float = Field(default=0.05, ge=0.0, le=60.0)
    degrade_after_failures: int = Field(default=3, ge=1, le=100)
    metrics_window: int = Field(default=50, ge=1, le=10000)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)


class OrchestrationConfig(BaseModel):
    """Configuration for the task orchestrator."""
    max_concurrent_tasks: int = Field(default=5, ge=1, le=10000)
    task_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0, le=100)
    retry_delay_seconds: float = Field(default=0.0, ge=0.0, le=3600.0)
    allow_empty_capabilities: bool = Field(default=True)
    scheduling_policy: SchedulingPolicy = Field(default=SchedulingPolicy.FIFO)
    enable_monitoring: bool = Field(default=False)
    monitoring_interval_seconds: float = Field(default=30.0, gt=0.0)


class SystemConfig(BaseModel):
    """Main system configuration."""
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)

    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    load_balancer: LoadBalancerConfig = Field(default_factory=LoadBalancerConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


def _env(name: str) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> SystemConfig:
    """
    Load configuration from CONDUCTOR_* environment variables.

    Returns:
        SystemConfig: Configuration object with values from environment
    """
    config_data: Dict[str, Any] = {}

    if _env("LOG_LEVEL"):
        config_data["log_level"] = _env("LOG_LEVEL")

    if _env("JSON_LOGGING"):
        config_data["json_logging"] = _env_bool(_env("JSON_LOGGING"))

    # Orchestrator settings
    orchestration_config: Dict[str, Any] = {}
    if _env("MAX_CONCURRENT_TASKS"):
        orchestration_config["max_concurrent_tasks"] = int(_env("MAX_CONCURRENT_TASKS"))

    if _env("TASK_TIMEOUT"):
        orchestration_config["task_timeout_seconds"] = float(_env("TASK_TIMEOUT"))

    if _env("MAX_RETRIES"):
        orchestration_config["max_retries"] = int(_env("MAX_RETRIES"))

    if _env("RETRY_DELAY"):
        orchestration_config["retry_delay_seconds"] = float(_env("RETRY_DELAY"))

    if _env("SCHEDULING_POLICY"):
        orchestration_config["scheduling_policy"] = _env("SCHEDULING_POLICY")

    if _env("ENABLE_MONITORING"):
        orchestration_config["enable_monitoring"] = _env_bool(_env("ENABLE_MONITORING"))

    if orchestration_config:
        config_data["orchestration"] = orchestration_config

    # Load balancer settings
    balancer_config: Dict[str, Any] = {}
    if _env("STRATEGY"):
        balancer_config["strategy"] = _env("STRATEGY")

    if _env("MAX_AGENT_RETRIES"):
        balancer_config["max_agent_retries"] = int(_env("MAX_AGENT_RETRIES"))

    health_config: Dict[str, Any] = {}
    if _env("HEALTH_CHECK_INTERVAL"):
        health_config["interval_seconds"] = float(_env("HEALTH_CHECK_INTERVAL"))

    if _env("HEALTH_CHECKS_ENABLED"):
        health_config["enabled"] = _env_bool(_env("HEALTH_CHECKS_ENABLED"))

    if health_config:
        balancer_config["health"] = health_config

    if balancer_config:
        config_data["load_balancer"] = balancer_config

    return SystemConfig(**config_data)


def load_config_from_file(config_path: Optional[Path] = None) -> SystemConfig:
    """
    Load configuration from a JSON file.

    A missing or unreadable file yields the defaults.

    Args:
        config_path: Path to configuration file

    Returns:
        SystemConfig: Configuration object
    """
    if config_path is None:
        config_path = Path("conductor.json")

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = json.load(f)
        return SystemConfig(**config_data)
    except (OSError, ValueError) as e:
        logger.warning("Could not load config file", path=str(config_path), error=str(e))
        return SystemConfig()


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Process-wide default, used only when no explicit config is passed
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the process-wide default configuration.

    File values are loaded first and environment variables override them.

    Returns:
        SystemConfig: Default configuration
    """
    global _config
    if _config is None:
        _config = load_config_from_file()
        env_overrides = load_config_from_env().model_dump(exclude_unset=True)

        if env_overrides:
            _config = SystemConfig(**_deep_merge(_config.model_dump(), env_overrides))

    return _config


def set_config(config: Optional[SystemConfig]) -> None:
    """
    Replace the process-wide default configuration.

    Passing None forces the next get_config() call to reload.
    """
    global _config
    _config = config

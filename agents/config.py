"""
Job and pool configuration.

Everything is read from environment variables so the same entry point works
from a shell, a CI job, or the ADK tool wrapper without extra plumbing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


def bool_env(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def int_env(name: str, default: Optional[int]) -> Optional[int]:
    v = os.environ.get(name)
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default


def float_env(name: str, default: float) -> float:
    v = os.environ.get(name)
    try:
        return float(v) if v is not None else default
    except ValueError:
        return default


def str_env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


# How many identical screens in a row count as "stuck".
DEFAULT_STUCK_THRESHOLDS: Dict[str, int] = {"ios": 3, "android": 4, "unknown": 4}

# Minimum captures we try to hand back, topping up from fallback candidates.
DEFAULT_MIN_SCREENSHOTS: Dict[str, int] = {"ios": 5, "android": 4, "unknown": 4}

DEFAULT_RECOVERY_LADDER = ("edge_swipe", "corner_taps", "relaunch")


@dataclass
class ExplorationConfig:
    app_id: str
    max_steps: int = 50
    max_screenshots: int = 10
    min_screenshots: Optional[int] = None
    output_dir: str = "./store-screenshots"
    debug_dir: Optional[str] = None
    primary_model: str = "gemini-2.0-flash"
    fallback_model: Optional[str] = None
    low_confidence_threshold: float = 0.68
    failure_escalation_threshold: int = 2
    platform: Optional[str] = None
    device_id: Optional[str] = None
    app_path: Optional[str] = None
    launch_wait_s: float = 3.0
    stuck_thresholds: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_STUCK_THRESHOLDS))
    recovery_ladder: tuple = DEFAULT_RECOVERY_LADDER
    max_recovery_attempts: int = 3

    def __post_init__(self):
        unknown = [r for r in self.recovery_ladder if r not in DEFAULT_RECOVERY_LADDER]
        if unknown:
            raise ValueError(f"Unknown recovery rung(s): {', '.join(unknown)}")
        self.recovery_ladder = tuple(self.recovery_ladder)
        self.max_recovery_attempts = max(1, int(self.max_recovery_attempts))

    def stuck_threshold(self, platform: str) -> int:
        return self.stuck_thresholds.get(platform, self.stuck_thresholds.get("unknown", 4))

    def minimum_target(self, platform: str) -> int:
        if self.min_screenshots is not None:
            wanted = self.min_screenshots
        else:
            wanted = DEFAULT_MIN_SCREENSHOTS.get(platform, DEFAULT_MIN_SCREENSHOTS["unknown"])
        return max(0, min(wanted, self.max_screenshots))

    @classmethod
    def from_env(cls, app_id: str) -> "ExplorationConfig":
        return cls(
            app_id=app_id,
            max_steps=int_env("MAX_STEPS", 50),
            max_screenshots=int_env("MAX_SCREENSHOTS", 10),
            # Unset or unparseable: the platform default applies.
            min_screenshots=int_env("MIN_SCREENSHOTS", None),
            output_dir=str_env("OUTPUT_DIR", "./store-screenshots"),
            debug_dir=str_env("DEBUG_SCREENS_DIR"),
            primary_model=str_env("GEMINI_MODEL", "gemini-2.0-flash"),
            fallback_model=str_env("GEMINI_FALLBACK_MODEL"),
            low_confidence_threshold=float_env("LOW_CONFIDENCE_THRESHOLD", 0.68),
            failure_escalation_threshold=int_env("FAILURE_ESCALATION_THRESHOLD", 2),
            platform=str_env("PLATFORM"),
            device_id=str_env("DEVICE_ID"),
            app_path=str_env("APP_PATH"),
        )


@dataclass
class PoolConfig:
    max_size: int = 5
    pre_create_count: int = 2
    acquire_timeout_s: float = 60.0
    device_type: str = "iPhone 15 Pro"
    # "uninstall" removes the leased app on release; "erase" wipes the device.
    cleanup_strategy: str = "uninstall"

    def __post_init__(self):
        self.max_size = max(1, int(self.max_size))
        self.pre_create_count = max(0, min(int(self.pre_create_count), self.max_size))
        if self.cleanup_strategy not in {"uninstall", "erase"}:
            raise ValueError(f"Unknown cleanup strategy: {self.cleanup_strategy}")

    @classmethod
    def from_env(cls) -> "PoolConfig":
        return cls(
            max_size=int_env("POOL_MAX_SIZE", 5),
            pre_create_count=int_env("POOL_PRECREATE", 2),
            acquire_timeout_s=float_env("POOL_ACQUIRE_TIMEOUT_S", 60.0),
            device_type=str_env("DEVICE_TYPE", "iPhone 15 Pro"),
            cleanup_strategy=str_env("POOL_CLEANUP_STRATEGY", "uninstall"),
        )

"""
Attendance Node Configuration
-----------------------------
All settings loaded from environment variables or .env file.
"""
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


# Face descriptor length produced by the embedding model
EMBEDDING_DIM = 128


def _bool_env(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Attendance node configuration."""

    # =========================
    # Camera
    # =========================
    CAMERA_INDEX: int = field(default_factory=lambda: int(os.getenv("CAMERA_INDEX", "0")))
    CAMERA_WIDTH: int = field(default_factory=lambda: int(os.getenv("CAMERA_WIDTH", "640")))
    CAMERA_HEIGHT: int = field(default_factory=lambda: int(os.getenv("CAMERA_HEIGHT", "480")))
    CAMERA_FPS: int = field(default_factory=lambda: int(os.getenv("CAMERA_FPS", "15")))

    # =========================
    # Models
    # =========================
    # Local directory or http(s) base URL holding manifest.json + weights
    MODEL_LOCATION: str = field(default_factory=lambda: os.getenv("MODEL_LOCATION", "models"))
    MODEL_CACHE_DIR: str = field(default_factory=lambda: os.getenv("MODEL_CACHE_DIR", "data/models"))
    MODEL_LOAD_TIMEOUT: float = field(default_factory=lambda: float(os.getenv("MODEL_LOAD_TIMEOUT", "30.0")))
    MODEL_LOAD_ATTEMPTS: int = field(default_factory=lambda: int(os.getenv("MODEL_LOAD_ATTEMPTS", "1")))
    # CLI only: reloads after a Failed start before giving up
    MODEL_START_RETRIES: int = field(default_factory=lambda: int(os.getenv("MODEL_START_RETRIES", "1")))
    # Simulated detections when the model cannot load (never committed without override)
    ALLOW_DEGRADED_MODE: bool = field(default_factory=lambda: _bool_env("ALLOW_DEGRADED_MODE", "false"))
    DETECTOR_CONF_THRESHOLD: float = field(default_factory=lambda: float(os.getenv("DETECTOR_CONF_THRESHOLD", "0.5")))

    # =========================
    # Recognition
    # =========================
    # Euclidean distance, lower = stricter
    MATCH_THRESHOLD: float = field(default_factory=lambda: float(os.getenv("MATCH_THRESHOLD", "0.6")))
    DETECTION_INTERVAL: float = field(default_factory=lambda: float(os.getenv("DETECTION_INTERVAL", "0.1")))
    MAX_CONSECUTIVE_FAILURES: int = field(default_factory=lambda: int(os.getenv("MAX_CONSECUTIVE_FAILURES", "5")))

    # =========================
    # Session
    # =========================
    SESSION_CONTEXT: Optional[str] = field(default_factory=lambda: os.getenv("SESSION_CONTEXT"))

    # =========================
    # Storage
    # =========================
    DATA_DIR: str = field(default_factory=lambda: os.getenv("DATA_DIR", "data"))
    IDENTITIES_PATH: str = field(default_factory=lambda: os.getenv("IDENTITIES_PATH", "data/identities.json"))
    RECORDS_DB_PATH: str = field(default_factory=lambda: os.getenv("RECORDS_DB_PATH", "data/attendance.db"))

    # =========================
    # Logging
    # =========================
    LOG_FILE: str = field(default_factory=lambda: os.getenv("LOG_FILE", "attendance_node.log"))
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


# Global config instance
config = Config()

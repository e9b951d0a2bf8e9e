import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///safefleet.db")
SEED_DIR = os.getenv("SEED_DIR", "data/seed")

# Severity defaults when no sanction configuration applies
DEFAULT_ALERT_POINTS = int(os.getenv("DEFAULT_ALERT_POINTS", "1"))
DEFAULT_ALARM_POINTS = int(os.getenv("DEFAULT_ALARM_POINTS", "3"))

# Scoring configuration
SAFETY_SCORE_BASE = int(os.getenv("SAFETY_SCORE_BASE", "100"))
SAFETY_POINTS_WEIGHT = float(os.getenv("SAFETY_POINTS_WEIGHT", "2"))
SAFETY_COUNT_WEIGHT = float(os.getenv("SAFETY_COUNT_WEIGHT", "0.5"))
DRIVER_SCORE_POINTS_WEIGHT = float(os.getenv("DRIVER_SCORE_POINTS_WEIGHT", "5"))
LICENSE_POINTS_START = int(os.getenv("LICENSE_POINTS_START", "12"))

# Display configuration
TOP_N = int(os.getenv("TOP_N", "5"))
LABEL_MAX_LENGTH = int(os.getenv("LABEL_MAX_LENGTH", "25"))

# Monthly KPI objectives for one partner (annual = 12x)
KPI_DRIVING_HOURS_MAX = int(os.getenv("KPI_DRIVING_HOURS_MAX", "8580"))
KPI_REST_DAYS_MIN = int(os.getenv("KPI_REST_DAYS_MIN", "132"))

# Notification configuration
NOTIFICATION_DURATION_MS = int(os.getenv("NOTIFICATION_DURATION_MS", "4000"))
CURRENT_USER_ID = os.getenv("CURRENT_USER_ID") or None

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "safefleet.log")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL
        self.seed_dir = SEED_DIR

        # Severity defaults
        self.default_alert_points = DEFAULT_ALERT_POINTS
        self.default_alarm_points = DEFAULT_ALARM_POINTS

        # Scoring
        self.safety_score_base = SAFETY_SCORE_BASE
        self.safety_points_weight = SAFETY_POINTS_WEIGHT
        self.safety_count_weight = SAFETY_COUNT_WEIGHT
        self.driver_score_points_weight = DRIVER_SCORE_POINTS_WEIGHT
        self.license_points_start = LICENSE_POINTS_START

        # Display
        self.top_n = TOP_N
        self.label_max_length = LABEL_MAX_LENGTH

        # KPI objectives
        self.kpi_driving_hours_max = KPI_DRIVING_HOURS_MAX
        self.kpi_rest_days_min = KPI_REST_DAYS_MIN

        # Notifications
        self.notification_duration_ms = NOTIFICATION_DURATION_MS
        self.current_user_id = CURRENT_USER_ID

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG

    def update_severity_defaults(self,
                                 alert_points: Optional[int] = None,
                                 alarm_points: Optional[int] = None):
        """Update the fallback point values at runtime."""
        for name, value in (("alert_points", alert_points), ("alarm_points", alarm_points)):
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if alert_points is not None:
            self.default_alert_points = alert_points
        if alarm_points is not None:
            self.default_alarm_points = alarm_points

    def update_scoring_weights(self,
                               points_weight: Optional[float] = None,
                               count_weight: Optional[float] = None,
                               base_score: Optional[int] = None,
                               license_points_start: Optional[int] = None):
        """Update scoring weights at runtime."""
        if license_points_start is not None and license_points_start < 1:
            raise ValueError(f"license_points_start must be >= 1, got {license_points_start}")
        if points_weight is not None:
            self.safety_points_weight = points_weight
        if count_weight is not None:
            self.safety_count_weight = count_weight
        if base_score is not None:
            self.safety_score_base = base_score
        if license_points_start is not None:
            self.license_points_start = license_points_start

    def get_severity_config(self) -> dict:
        """Get severity defaults as dictionary."""
        return {
            "default_alert_points": self.default_alert_points,
            "default_alarm_points": self.default_alarm_points
        }

    def get_scoring_config(self) -> dict:
        """Get scoring configuration as dictionary."""
        return {
            "safety_score_base": self.safety_score_base,
            "safety_points_weight": self.safety_points_weight,
            "safety_count_weight": self.safety_count_weight,
            "driver_score_points_weight": self.driver_score_points_weight,
            "license_points_start": self.license_points_start
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()

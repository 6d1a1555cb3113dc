import os
from dotenv import load_dotenv
from sqlalchemy.pool import StaticPool

# Load variables from .env
load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "defaultsecret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///dispatch.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Background dispatch pass
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
    DISPATCH_INTERVAL_SECONDS = int(os.getenv("DISPATCH_INTERVAL_SECONDS", "10"))
    DISPATCH_LOOKAHEAD_MINUTES = int(os.getenv("DISPATCH_LOOKAHEAD_MINUTES", "60"))
    DISPATCH_LOOKBACK_MINUTES = int(os.getenv("DISPATCH_LOOKBACK_MINUTES", "120"))
    DISPATCH_MAX_ATTEMPTS = int(os.getenv("DISPATCH_MAX_ATTEMPTS", "2"))

    # Geocoding / routing providers. No OSRM URL means great-circle distances only.
    NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org")
    GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "DispatchService/1.0 (ops@example.com)")
    OSRM_BASE_URL = os.getenv("OSRM_BASE_URL")
    ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "5"))

    # Pricing fallbacks
    DEFAULT_VEHICLE_TYPE = os.getenv("DEFAULT_VEHICLE_TYPE", "Saloon")
    DEFAULT_BASE_RATE = os.getenv("DEFAULT_BASE_RATE", "3.00")
    DEFAULT_PER_MILE = os.getenv("DEFAULT_PER_MILE", "2.00")
    DEFAULT_MIN_FARE = os.getenv("DEFAULT_MIN_FARE", "5.00")
    DEGRADED_FARE = os.getenv("DEGRADED_FARE", "15.00")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }
    SCHEDULER_ENABLED = False
    NOMINATIM_URL = None
    OSRM_BASE_URL = None

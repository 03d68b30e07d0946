import os

from dotenv import load_dotenv

# Load environment variables from .env file, if it exists
load_dotenv()

# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./time_tracking.db")
OFFLINE_QUEUE_URL = os.getenv("OFFLINE_QUEUE_URL", "sqlite:///./offline_queue.db")
PERSISTENCE_TIMEOUT_SECONDS = float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "30"))
OFFLINE_MAX_ATTEMPTS = int(os.getenv("OFFLINE_MAX_ATTEMPTS", "5"))
# How often queued events are replayed against the store in the background
OFFLINE_SYNC_INTERVAL_SECONDS = float(os.getenv("OFFLINE_SYNC_INTERVAL_SECONDS", "60"))

# Location verification (policy parameters, not physical constants)
GPS_ACCURACY_THRESHOLD_METERS = float(os.getenv("GPS_ACCURACY_THRESHOLD_METERS", "50"))
LOCATION_TIMEOUT_SECONDS = float(os.getenv("LOCATION_TIMEOUT_SECONDS", "30"))
DEFAULT_GEOFENCE_RADIUS_METERS = float(os.getenv("DEFAULT_GEOFENCE_RADIUS_METERS", "100"))
LOCATION_SAMPLE_INTERVAL_SECONDS = float(os.getenv("LOCATION_SAMPLE_INTERVAL_SECONDS", "300"))

# CAO Particuliere Beveiliging
CAO_TIMEZONE = os.getenv("CAO_TIMEZONE", "Europe/Amsterdam")
MINIMUM_HOURLY_RATE = float(os.getenv("MINIMUM_HOURLY_RATE", "12.00"))
DEFAULT_HOURLY_RATE = float(os.getenv("DEFAULT_HOURLY_RATE", "15.00"))
# "annual" observes Bevrijdingsdag every year, "lustrum" only every fifth year
LIBERATION_DAY_POLICY = os.getenv("LIBERATION_DAY_POLICY", "annual")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# CORS origins for the host frontend
DEV_DOMAIN = os.getenv("DEV_DOMAIN", "http://localhost:5173")
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN")

"""
FleetTrack configuration.

Every setting is a module-level constant read once from the environment, with a
default that is safe for local development.
"""
import os

APP_NAME = os.getenv("APP_NAME", "FleetTrack")

# Store
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Auth (tokens are issued by the external auth service, we only verify them)
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# TRIP OFFERS
# =============================================================================

OFFER_TTL_MINUTES = int(os.getenv("OFFER_TTL_MINUTES", 24 * 60))
"""
How long a driver has to answer a trip offer before it is auto-declined.
0 disables expiry, leaving explicit decline or manager edit as the only way out.
"""

# =============================================================================
# ROUTING PROVIDER
# =============================================================================

USE_ROAD_DISTANCE = os.getenv("USE_ROAD_DISTANCE", "false").lower() in ("1", "true", "yes")
"""When False, route estimates use haversine distance without calling OSRM."""

OSRM_SERVER_URL = os.getenv("OSRM_SERVER_URL", "https://router.project-osrm.org")

OSRM_TIMEOUT_SECONDS = float(os.getenv("OSRM_TIMEOUT_SECONDS", 5.0))
"""Fail fast: a slow router must never hold up a trip assignment."""

NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/search")

HAVERSINE_FALLBACK_MULTIPLIER = 1.4
"""City roads run roughly 1.3-1.5x the straight-line distance."""

AVG_SPEED_KMH = 35.0
"""Used to turn a fallback distance into a duration estimate."""

PORT = int(os.getenv("PORT", 8000))

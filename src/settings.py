"""Static configuration for cityscope.

All user-editable settings (locality, providers, ingest, notifications,
logging) live in a single JSON file. Secrets stay in the environment.
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# CITYSCOPE_CONFIG lets tests and deployments point at another file.
CONFIG_PATH = os.getenv("CITYSCOPE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path):
    """Resolve relative paths against the project root; keep None as None."""

    if not path:
        return None
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Locality: the bounds themselves come from the locality registry.
_locality = _CONFIG.get("locality", {})
LOCALITY = _locality.get("id", "bg.sofia")
TIMEZONE = _locality.get("timezone", "Europe/Sofia")
BOUNDARY_PATH = _project_path(_locality.get("boundary_path"))
# City-wide messages are matched against <dir>/<locality>.geojson.
LOCALITIES_DIR = _project_path(_locality.get("boundaries_dir", "localities"))
CITY_NAME = _locality.get("city", "Sofia")
COUNTRY_CODE = _locality.get("country_code", "BG")
COUNTRY_NAME = _locality.get("country", "Bulgaria")

DB_PATH = _project_path(_CONFIG.get("database", {}).get("path", "cityscope.db"))

# Geocoding thresholds and providers. Unset provider paths disable them.
_geocoding = _CONFIG.get("geocoding", {})
COORDINATE_PRECISION = int(_geocoding.get("coordinate_precision", 6))
DEDUP_DISTANCE_METERS = float(_geocoding.get("dedup_distance_meters", 50))
OUTLIER_DISTANCE_METERS = float(_geocoding.get("outlier_distance_meters", 1000))
TRANSIT_STOP_LABEL = _geocoding.get("transit_stop_label", "Спирка")
GEOCODER_TIMEOUT_SECONDS = float(_geocoding.get("timeout_seconds", 10))
OVERPASS_ENABLED = bool(_geocoding.get("overpass_enabled", True))
OVERPASS_INSTANCES = _geocoding.get("overpass_instances") or None
STREET_GEOMETRY_ENABLED = bool(_geocoding.get("street_geometry_enabled", False))
PARCELS_PATH = _project_path(_geocoding.get("parcels_path"))
GTFS_STOPS_PATH = _project_path(_geocoding.get("gtfs_stops_path"))

# Extraction service: "http" talks to a live endpoint, "fixtures" replays
# canned responses from a directory.
_extraction = _CONFIG.get("extraction", {})
EXTRACTION_MODE = _extraction.get("mode", "http")
EXTRACTION_ENDPOINT = _extraction.get("endpoint", "http://localhost:8000")
EXTRACTION_FIXTURES_PATH = _project_path(_extraction.get("fixtures_path", "fixtures"))
EXTRACTION_FIXTURE_PATTERNS = _extraction.get("fixture_patterns", {})
EXTRACTION_TIMEOUT_SECONDS = float(_extraction.get("timeout_seconds", 60))

_ingest = _CONFIG.get("ingest", {})
COLLABORATOR_TIMEOUT_SECONDS = float(_ingest.get("collaborator_timeout_seconds", 60))
TIMESPAN_FLOOR = _ingest.get("timespan_floor", "2025-01-01")
MAX_ERROR_PAYLOAD_CHARS = int(_ingest.get("max_error_payload_chars", 1000))

# Notification method switches adapters without changing core logic.
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("method", "bot_api")
APP_URL = _notifications.get("app_url", "http://localhost:3000")
PREVIEW_CHARS = int(_notifications.get("preview_chars", 100))
NOTIFICATION_TITLE = _notifications.get("title", "Ново съобщение в Cityscope")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})

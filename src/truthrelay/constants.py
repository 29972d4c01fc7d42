"""Centralized constants for truthrelay."""

# Discord embed limits
MAX_EMBED_DESCRIPTION_LENGTH = 4000
MAX_EMBED_TITLE_LENGTH = 256

# Error reporting defaults
DEFAULT_ERROR_THRESHOLD = 3
DEFAULT_ERROR_COOLDOWN_SECONDS = 30 * 60

# Failure domains reported through the governor
DOMAIN_STORE_CONNECT = "store-connect"
DOMAIN_STORE_IO = "store-io"
DOMAIN_FETCH_CALL = "fetch-call"
DOMAIN_FETCH_CONFIG = "fetch-config"
DOMAIN_SINK_DELIVER = "sink-deliver"

# Durable record
WATERMARK_FIELD = "last_delivered_id"

# Display
DISPLAY_TIMEZONE = "America/New_York"

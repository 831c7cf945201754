"""Internal constants shared across the library."""

LIB_VERSION = "1.2.0"

EVENTS_ENDPOINT = "https://public-pensieve-stats.us-east4.prod.spresso.com/track"
EVENTS_ENDPOINT_STAGING = "https://public-pensieve-stats.us-east4.staging.spresso.com/track"

DEFAULT_BULK_UPLOAD_LIMIT = 40
DEFAULT_FLUSH_INTERVAL_MS = 10 * 1000
DEFAULT_DATA_EXPIRATION_MS = 5 * 24 * 60 * 60 * 1000
DEFAULT_BATCH_LIMIT = 50

# ------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------

SESSION_INACTIVITY_MS = 5 * 60 * 1000

#: Synthetic event emitted by the SDK itself; never counts as user activity.
INTERNAL_EVENT_NAME = "glimpseAction"

# ------------------------------------------------------------------
# Well-known event names
# ------------------------------------------------------------------

EVENT_CREATE_ORDER = "spresso_create_order"
EVENT_GLIMPSE_PLE = "spresso_glimpse_ple"
EVENT_GLIMPSE_PRODUCT_PLE = "spresso_glimpse_product_ple"
EVENT_VIEW_PAGE = "spresso_screen_view"
EVENT_PURCHASE_VARIANT = "spresso_purchase_variant"
EVENT_ADD_TO_CART = "spresso_tap_add_to_cart"
EVENT_VIEW_PRODUCT = "spresso_view_pdp"

# ------------------------------------------------------------------
# Transport
# ------------------------------------------------------------------

ACK_BODY = "1"
FLAKY_SOCKET_ATTEMPTS = 3
RECOVERABLE_HTTP_STATUSES: frozenset[int] = frozenset({408, 429})

#: ``$time`` format for charge records.
ENGAGE_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

"""pyspresso - durable, batched event and people telemetry for Python apps."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyspresso")
except PackageNotFoundError:
    __version__ = "0+local"
from pyspresso._constants import (
    EVENT_ADD_TO_CART,
    EVENT_CREATE_ORDER,
    EVENT_GLIMPSE_PLE,
    EVENT_GLIMPSE_PRODUCT_PLE,
    EVENT_PURCHASE_VARIANT,
    EVENT_VIEW_PAGE,
    EVENT_VIEW_PRODUCT,
    LIB_VERSION,
)
from pyspresso._dispatcher import Dispatcher, is_sending_enabled, set_sending_enabled
from pyspresso.client import People, SpressoClient, is_collection_enabled, set_collection_enabled
from pyspresso.config import DeviceProfile, SpressoConfig
from pyspresso.exceptions import (
    SpressoConfigError,
    SpressoError,
    SpressoStorageError,
    SpressoTransportError,
    SpressoWorkerDeadError,
)
from pyspresso.models import DeliveryResult, DeliveryStatus, EventDescription, Identity

__all__ = [
    "__version__",
    "DeliveryResult",
    "DeliveryStatus",
    "DeviceProfile",
    "Dispatcher",
    "EVENT_ADD_TO_CART",
    "EVENT_CREATE_ORDER",
    "EVENT_GLIMPSE_PLE",
    "EVENT_GLIMPSE_PRODUCT_PLE",
    "EVENT_PURCHASE_VARIANT",
    "EVENT_VIEW_PAGE",
    "EVENT_VIEW_PRODUCT",
    "EventDescription",
    "Identity",
    "LIB_VERSION",
    "People",
    "SpressoClient",
    "SpressoConfig",
    "SpressoConfigError",
    "SpressoError",
    "SpressoStorageError",
    "SpressoTransportError",
    "SpressoWorkerDeadError",
    "is_collection_enabled",
    "is_sending_enabled",
    "set_collection_enabled",
    "set_sending_enabled",
]

from fulfillment.core.config.manager import ConfigManager
from fulfillment.core.config.models import FulfillmentConfig
from fulfillment.core.config.paths import ConfigFsPaths

__all__ = ["ConfigManager", "FulfillmentConfig", "ConfigFsPaths"]

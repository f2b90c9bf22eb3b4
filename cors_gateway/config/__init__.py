from .service import GatewaySettings, get_settings

__all__ = ["GatewaySettings", "get_settings"]

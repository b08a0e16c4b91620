from pilot_desktop.api.routes import register_routes

__all__ = ["register_routes"]

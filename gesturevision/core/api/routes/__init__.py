"""
API route modules.

- system: health text and the WebSocket endpoint
- config: global configuration
- plugins: plugin manifests, plugin configuration and plugin management
- streams: RTSP source ROI and media server hooks
"""

from .system import setup_system_routes
from .config import setup_config_routes
from .plugins import setup_plugin_routes
from .streams import setup_stream_routes


def setup_all_routes(app, hub):
    """Register all API routes with the application."""
    setup_system_routes(app, hub)
    setup_config_routes(app)
    setup_plugin_routes(app)
    setup_stream_routes(app)

"""
Plugin Registry - Discovery and registration of channel plugins.

This module provides the central registry for notification channel
plugins, handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.base import logger
from plugins.channels.base import NotificationChannel

ENTRY_POINT_GROUP = "access_relay.channels"


class PluginRegistry:
    """
    Central registry for channel plugins.

    Plugins are registered as classes and instantiated on first use. The
    active channel is chosen by name from configuration.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._channel_plugins: Dict[str, Type[NotificationChannel]] = {}

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._channel_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized plugin instances
        self._channel_instances: Dict[str, NotificationChannel] = {}

        # Plugin configurations loaded from environment
        self._channel_plugin_configs: Dict[str, Dict[str, Any]] = {}

    def register_channel_plugin(
        self, plugin_class: Type[NotificationChannel]
    ) -> None:
        """
        Register a channel plugin class.

        Args:
            plugin_class: The NotificationChannel subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._channel_plugins:
            logger.warning(f"Overwriting existing channel plugin: {name}")

        self._channel_plugins[name] = plugin_class
        self._channel_plugin_info[name] = {"name": name, "version": version}
        self._channel_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered channel plugin: {name} v{version}")

    async def get_channel_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> NotificationChannel:
        """
        Get an initialized channel plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized NotificationChannel instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._channel_plugins:
            available = ", ".join(self._channel_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown channel plugin: {name}. Available plugins: {available}"
            )

        if name not in self._channel_instances:
            plugin = self._channel_plugins[name]()
            await plugin.initialize(config or {})
            self._channel_instances[name] = plugin
            logger.info(f"Initialized channel plugin: {name}")

        return self._channel_instances[name]

    def list_channel_plugins(self) -> list[str]:
        """List all registered channel plugin names."""
        return list(self._channel_plugins.keys())

    def has_channel_plugin(self, name: str) -> bool:
        """Check if a channel plugin is registered."""
        return name in self._channel_plugins

    def get_channel_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered channel plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._channel_plugin_info.get(name)

    def get_channel_plugin_config(self, name: str) -> Dict[str, Any]:
        """
        Get the environment-loaded configuration for a channel plugin.

        Returns:
            A copy of the configuration, or empty dict if not found
        """
        return dict(self._channel_plugin_configs.get(name, {}))


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in channel plugins and discover third-party ones
    via entry points.

    Called during application startup.
    """
    registry = get_registry()

    try:
        from plugins.channels.slack import SlackChannel

        registry.register_channel_plugin(SlackChannel)
    except ImportError as e:
        logger.warning(f"Could not load Slack channel plugin: {e}")

    try:
        from plugins.channels.jira import JiraChannel

        registry.register_channel_plugin(JiraChannel)
    except ImportError as e:
        logger.warning(f"Could not load Jira channel plugin: {e}")

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            registry.register_channel_plugin(ep.load())
        except Exception as e:
            logger.warning(f"Could not load channel plugin {ep.name}: {e}")

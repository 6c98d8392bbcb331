"""Built-in step plugins and the isolated custom-code runner."""

from .executor import PluginExecutor, CONTROL_TYPES, EXECUTABLE_TYPES
from .ssrf import SSRFError, check_url, is_safe_url
from .text_transform import handle_text_transform, caesar_cipher
from .api_proxy import handle_api_proxy, cache_key
from .data_aggregator import handle_data_aggregator, aggregate
from .delay import handle_delay
from .sandbox import handle_custom_code, run_isolated

__all__ = [
    "PluginExecutor",
    "CONTROL_TYPES",
    "EXECUTABLE_TYPES",
    "SSRFError",
    "check_url",
    "is_safe_url",
    "handle_text_transform",
    "caesar_cipher",
    "handle_api_proxy",
    "cache_key",
    "handle_data_aggregator",
    "aggregate",
    "handle_delay",
    "handle_custom_code",
    "run_isolated",
]

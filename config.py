# =============================================================================
# Trifecta Overlay - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# both the edge client and the inference relay. Values are layered:
#   1. dataclass defaults
#   2. optional YAML file (TRIFECTA_CONFIG, default config.yaml next to here)
#   3. environment variables with the TRIFECTA_ prefix
#      (e.g., TRIFECTA_SAMPLING_MS=200)
# =============================================================================

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())

_DEFAULT_CONFIG_PATH = os.path.join(_PROJECT_ROOT, "config.yaml")


def _parse_bool(value) -> bool:
    """
    Interpret a YAML/env value as a boolean.

    Args:
        value: A bool, number or string such as "true", "1", "yes".

    Returns:
        bool: The truthiness of the value.
    """
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# Nested YAML path -> flat Config field. The client section is also what the
# relay serves at /config.json, so the same table drives both directions.
_CLIENT_YAML_FIELDS = {
    ("sampling_ms",): "sampling_ms",
    ("max_in_flight",): "max_in_flight",
    ("request_timeout_ms",): "request_timeout_ms",
    ("image", "format"): "image_format",
    ("image", "jpeg_quality"): "jpeg_quality",
    ("image", "max_width"): "max_width",
    ("image", "max_height"): "max_height",
}

_BACKEND_YAML_FIELDS = {
    ("base_url",): "backend_base_url",
    ("endpoints", "seg"): "endpoint_seg",
    ("endpoints", "face"): "endpoint_face",
    ("endpoints", "text"): "endpoint_text",
    ("timeout_ms",): "backend_timeout_ms",
    ("max_concurrent_calls",): "max_concurrent_calls",
    ("use_mock",): "use_mock",
    ("transport",): "backend_transport",
    ("seg_is_background_mask",): "seg_is_background_mask",
}

_SERVER_YAML_FIELDS = {
    ("host",): "server_host",
    ("port",): "server_port",
    ("jitter_min_ms",): "response_jitter_min_ms",
    ("jitter_max_ms",): "response_jitter_max_ms",
}

_RENDER_YAML_FIELDS = {
    ("background_blur",): "background_blur_radius",
    ("face_blur",): "face_blur_radius",
    ("feather",): "mask_feather_radius",
    ("display_fps",): "display_fps",
    ("display_max_width",): "display_max_width",
}

_YAML_SECTIONS = {
    "client": _CLIENT_YAML_FIELDS,
    "backend": _BACKEND_YAML_FIELDS,
    "server": _SERVER_YAML_FIELDS,
    "render": _RENDER_YAML_FIELDS,
}

# Older environment names still honored.
_LEGACY_ENV = {
    "HF_BASE_URL": "backend_base_url",
    "HF_TIMEOUT_MS": "backend_timeout_ms",
    "HF_MAX_CONCURRENT": "max_concurrent_calls",
    "USE_MOCK": "use_mock",
    "PORT": "server_port",
}


def _lookup(tree: Dict[str, Any], path) -> Any:
    node = tree
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _assign(tree: Dict[str, Any], path, value) -> None:
    node = tree
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


@dataclass
class Config:
    """
    Centralized configuration for the Trifecta Overlay system.

    All fields can be overridden via environment variables prefixed with
    TRIFECTA_.
    """

    # -- Networking --
    server_host: str = "127.0.0.1"
    server_port: int = 3000

    # -- Frame sampling (client) --
    sampling_ms: int = 150
    max_in_flight: int = 2
    request_timeout_ms: int = 5000
    image_format: str = "jpeg"
    jpeg_quality: float = 0.6
    max_width: int = 640
    max_height: int = 640

    # -- Frame source / display (client) --
    capture_source: str = "camera"  # "camera" or "screen"
    camera_index: int = 0
    capture_monitor: int = 1
    display_fps: int = 60
    display_max_width: int = 1280

    # -- Compositing (client) --
    background_blur_radius: float = 18.0
    face_blur_radius: float = 16.0
    mask_feather_radius: float = 4.0

    # -- Inference backend (relay) --
    backend_base_url: str = "https://amithadiraju1694-trifecta-backend.hf.space"
    endpoint_seg: str = "/run_segmentation"
    endpoint_face: str = "/run_facemask"
    endpoint_text: str = "/run_text"
    backend_timeout_ms: int = 1500
    max_concurrent_calls: int = 6
    backend_transport: str = "raw"  # "raw" bytes body or "json" data URL
    seg_is_background_mask: bool = True
    use_mock: bool = False

    # -- Response pacing (relay) --
    response_jitter_min_ms: int = 12
    response_jitter_max_ms: int = 30

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)
    ws_url: str = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.refresh_urls()

    def refresh_urls(self) -> None:
        """Recompute server_url / ws_url from host and port."""
        self.server_url = f"http://{self.server_host}:{self.server_port}"
        self.ws_url = f"ws://{self.server_host}:{self.server_port}/ws"

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for TRIFECTA_<FIELD_NAME_UPPERCASE> environment variables (and
        the legacy HF_* / USE_MOCK / PORT names) and applies them with
        appropriate type conversion.
        """
        for env_key, field_name in _LEGACY_ENV.items():
            env_value = os.environ.get(env_key)
            if env_value:
                self._set_typed(field_name, env_value)

        for field_name in _FIELD_TYPES:
            env_value = os.environ.get(f"TRIFECTA_{field_name.upper()}")
            if env_value is not None:
                self._set_typed(field_name, env_value)

    def _set_typed(self, field_name: str, value) -> None:
        field_type = _FIELD_TYPES[field_name]
        if field_type is bool:
            setattr(self, field_name, _parse_bool(value))
        else:
            setattr(self, field_name, field_type(value))

    # -----------------------------------------------------------------
    # Client config exchange (/config.json)
    # -----------------------------------------------------------------

    def client_config(self) -> Dict[str, Any]:
        """
        Return the client section in its nested YAML shape.

        Returns:
            dict: e.g. {"sampling_ms": 150, "image": {"format": "jpeg", ...}}.
        """
        tree: Dict[str, Any] = {}
        for path, field_name in _CLIENT_YAML_FIELDS.items():
            _assign(tree, path, getattr(self, field_name))
        return tree

    def apply_client_config(self, overrides: Optional[Dict[str, Any]]) -> None:
        """
        Apply a nested client section (as served by the relay) in place.

        Unknown keys are ignored; values that fail type conversion are
        logged and skipped so a bad relay config never stops the client.
        """
        if not overrides:
            return
        for path, field_name in _CLIENT_YAML_FIELDS.items():
            value = _lookup(overrides, path)
            if value is None:
                continue
            try:
                self._set_typed(field_name, value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid client config %s=%r", ".".join(path), value)


_FIELD_TYPES = {
    "server_host": str,
    "server_port": int,
    "sampling_ms": int,
    "max_in_flight": int,
    "request_timeout_ms": int,
    "image_format": str,
    "jpeg_quality": float,
    "max_width": int,
    "max_height": int,
    "capture_source": str,
    "camera_index": int,
    "capture_monitor": int,
    "display_fps": int,
    "display_max_width": int,
    "background_blur_radius": float,
    "face_blur_radius": float,
    "mask_feather_radius": float,
    "backend_base_url": str,
    "endpoint_seg": str,
    "endpoint_face": str,
    "endpoint_text": str,
    "backend_timeout_ms": int,
    "max_concurrent_calls": int,
    "backend_transport": str,
    "seg_is_background_mask": bool,
    "use_mock": bool,
    "response_jitter_min_ms": int,
    "response_jitter_max_ms": int,
}


def load_config(path: Optional[str] = None) -> Config:
    """
    Build a Config from an optional YAML file, then apply env overrides.

    A missing or unreadable file falls back to defaults.

    Args:
        path: YAML file path. Defaults to $TRIFECTA_CONFIG or config.yaml in
              the project root.

    Returns:
        Config: The resolved configuration.
    """
    path = path or os.environ.get("TRIFECTA_CONFIG", _DEFAULT_CONFIG_PATH)
    kwargs: Dict[str, Any] = {}

    try:
        with open(path, "r", encoding="utf-8") as fh:
            tree = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        logger.debug("No config file at %s, using defaults", path)
        tree = {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read config %s (%s), using defaults", path, exc)
        tree = {}

    for section, table in _YAML_SECTIONS.items():
        section_tree = tree.get(section) if isinstance(tree, dict) else None
        if not isinstance(section_tree, dict):
            continue
        for yaml_path, field_name in table.items():
            value = _lookup(section_tree, yaml_path)
            if value is None:
                continue
            field_type = _FIELD_TYPES[field_name]
            kwargs[field_name] = _parse_bool(value) if field_type is bool else field_type(value)

    return Config(**kwargs)


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config()
    return _config_instance

"""Configuration for AiBridge.

User configuration (a Hydra ``DictConfig`` or a plain mapping) is merged over
``DEFAULT_CONFIG``. Scalar dispatch settings are validated by
:class:`BridgeConfig`; provider keys fall back to the usual environment
variables.
"""

import numbers
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from omegaconf import DictConfig, OmegaConf

from aibridge.cache import CacheBackend, DiskCache, MongoDBCache, VolatileCache
from aibridge.errors import ConfigError

DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": {"openai": None, "anthropic": None, "gemini": None},
    "cache": [
        {"type": "memory", "max_entries": 1024},
        {"type": "disk", "path": ".cache/aibridge"},
    ],
    "default": {
        "chat": {
            "model": None,
            "temperature": 0,
            "total_tokens": None,
            "max_tokens": None,
            "top_p": 1,
            "frequency_penalty": 0,
            "presence_penalty": 0,
        },
        "embedding": {"model": "text-embedding-ada-002"},
    },
    "provider_rate_limit": 4,
    "provider_latency_add": 0.0,
    "temperature_key_multiplier": 10.0,
    "max_temperature_partitions": 16,
    "max_attempts": 2,
    "request_timeout": 60.0,
    "openai_base_url": "https://api.openai.com/v1",
    "anthropic_base_url": "https://api.anthropic.com/v1",
    "default_cache_group": "default",
}

PROVIDER_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GOOGLE_API_KEY",
}


class BridgeConfig:
    """Validated dispatch and routing settings."""

    FIELD_META: Dict[str, Dict[str, Any]] = {
        "provider_rate_limit": {"type": "int", "min": 1, "default": 4},
        "provider_latency_add": {"type": "float", "min": 0.0, "default": 0.0},
        "temperature_key_multiplier": {"type": "float", "min": 0.0, "default": 10.0},
        "max_temperature_partitions": {"type": "int", "min": 1, "default": 16},
        "max_attempts": {"type": "int", "min": 1, "default": 2},
        "request_timeout": {"type": "float", "min_exclusive": 0.0, "default": 60.0},
        "openai_base_url": {"type": "str", "default": "https://api.openai.com/v1", "allow_blank": False},
        "anthropic_base_url": {
            "type": "str",
            "default": "https://api.anthropic.com/v1",
            "allow_blank": False,
        },
        "default_cache_group": {"type": "str", "default": "default", "allow_blank": False},
    }

    TYPE_LABELS = {
        "int": "an integer",
        "float": "a float",
        "str": "a string",
    }

    def __init__(self, **kwargs: Any):
        unknown = set(kwargs) - set(self.FIELD_META)
        if unknown:
            raise ConfigError("Unknown bridge configuration parameters: " + ", ".join(sorted(unknown)))
        for key, value in self._normalized_values(kwargs).items():
            setattr(self, key, value)

    @classmethod
    def from_omegaconf(cls, config: Union[DictConfig, Mapping[str, Any], None]) -> "BridgeConfig":
        """Create an instance from the scalar settings of a DictConfig or mapping."""
        if config is None:
            return cls()
        if isinstance(config, DictConfig):
            config = OmegaConf.to_container(config, resolve=True)
        if not isinstance(config, Mapping):
            raise ConfigError("Bridge configuration must be a mapping or DictConfig-compatible object.")
        return cls(**{key: value for key, value in config.items() if key in cls.FIELD_META})

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.FIELD_META}

    def apply_overrides(self, **overrides: Any) -> None:
        unknown = set(overrides) - set(self.FIELD_META)
        if unknown:
            raise ConfigError("Unknown bridge configuration parameters: " + ", ".join(sorted(unknown)))
        merged = self.as_dict()
        merged.update(overrides)
        for key, value in self._normalized_values(merged).items():
            setattr(self, key, value)

    @classmethod
    def _normalized_values(cls, overrides: Mapping[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        errors: List[str] = []
        for name, meta in cls.FIELD_META.items():
            raw_value = overrides.get(name, meta["default"])
            try:
                value = cls._cast_value(name, raw_value, meta["type"])
                cls._validate_constraints(name, value, meta)
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
                continue
            data[name] = value
        if errors:
            raise ConfigError("Invalid bridge configuration: " + "; ".join(errors))
        return data

    @classmethod
    def _cast_value(cls, name: str, value: Any, type_name: str) -> Any:
        if value is None or isinstance(value, bool):
            raise cls._type_error(name, type_name, value)
        if type_name == "str":
            return str(value).strip()

        if isinstance(value, str):
            text = value.strip()
            try:
                value = float(text) if type_name == "float" or "." in text else int(text, 10)
            except ValueError as exc:
                raise cls._type_error(name, type_name, value) from exc
        if not isinstance(value, numbers.Real):
            raise cls._type_error(name, type_name, value)
        if type_name == "float":
            return float(value)
        if float(value).is_integer():
            return int(value)
        raise cls._type_error(name, type_name, value)

    @classmethod
    def _type_error(cls, name: str, type_name: str, value: Any) -> TypeError:
        label = cls.TYPE_LABELS.get(type_name, type_name)
        return TypeError(
            f"Parameter '{name}' must be {label} (received {value!r} of type {type(value).__name__})."
        )

    @staticmethod
    def _validate_constraints(name: str, value: Any, meta: Dict[str, Any]) -> None:
        if meta.get("allow_blank") is False and value == "":
            raise ValueError(f"Parameter '{name}' cannot be empty.")

        min_value = meta.get("min")
        if min_value is not None and value < min_value:
            raise ValueError(
                f"Parameter '{name}' must be greater than or equal to {min_value} (received {value})."
            )

        min_exclusive = meta.get("min_exclusive")
        if min_exclusive is not None and value <= min_exclusive:
            raise ValueError(f"Parameter '{name}' must be greater than {min_exclusive} (received {value}).")


@dataclass
class ProviderCredentials:
    """API keys handed explicitly to each provider dispatch."""

    openai: Optional[str] = None
    anthropic: Optional[str] = None
    gemini: Optional[str] = None

    def __post_init__(self) -> None:
        for provider in PROVIDER_ENV_VARS:
            value = getattr(self, provider)
            if value is not None and str(value).strip() == "":
                setattr(self, provider, None)

    @classmethod
    def from_config(cls, provider_cfg: Optional[Mapping[str, Any]]) -> "ProviderCredentials":
        provider_cfg = provider_cfg or {}
        values = {}
        for provider, env_var in PROVIDER_ENV_VARS.items():
            values[provider] = provider_cfg.get(provider) or os.getenv(env_var)
        return cls(**values)

    def for_provider(self, provider: str) -> Optional[str]:
        return getattr(self, provider, None)

    def any(self) -> bool:
        return any(getattr(self, provider) for provider in PROVIDER_ENV_VARS)


@dataclass
class BridgeSettings:
    config: BridgeConfig
    credentials: ProviderCredentials
    cache_layers: List[Dict[str, Any]] = field(default_factory=list)
    defaults: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def load_settings(cfg: Union[DictConfig, Mapping[str, Any], None] = None) -> BridgeSettings:
    """Merge ``cfg`` over ``DEFAULT_CONFIG`` and validate the result."""
    merged = OmegaConf.create(DEFAULT_CONFIG)
    if cfg is not None:
        user_cfg = cfg if isinstance(cfg, DictConfig) else OmegaConf.create(dict(cfg))
        # Lists replace rather than merge, so a user cache stack wins as a whole.
        merged = OmegaConf.merge(merged, user_cfg)
    container = OmegaConf.to_container(merged, resolve=True)

    credentials = ProviderCredentials.from_config(container.get("provider"))
    if not credentials.any():
        raise ConfigError("No provider keys provided")

    default = container.get("default") or {}
    return BridgeSettings(
        config=BridgeConfig.from_omegaconf(container),
        credentials=credentials,
        cache_layers=list(container.get("cache") or []),
        defaults={
            "chat": dict(default.get("chat") or {}),
            "embedding": dict(default.get("embedding") or {}),
        },
    )


def build_backends(layer_specs: List[Mapping[str, Any]]) -> List[CacheBackend]:
    """Instantiate cache layers, fastest first, from their config entries."""
    backends: List[CacheBackend] = []
    for spec in layer_specs:
        layer_type = str(spec.get("type", "")).lower()
        if layer_type == "memory":
            backends.append(VolatileCache(max_entries=int(spec.get("max_entries", 1024))))
        elif layer_type == "disk":
            backends.append(DiskCache(cache_dir=spec.get("path", ".cache/aibridge")))
        elif layer_type == "mongodb":
            if not spec.get("url"):
                raise ConfigError("The mongodb cache layer requires a 'url'.")
            backends.append(MongoDBCache(url=spec["url"], database=spec.get("database", "aibridge")))
        else:
            raise ConfigError(f"Unknown cache layer type: {spec.get('type')!r}")
    return backends

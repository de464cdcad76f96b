from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from devpod_core import paths
from devpod_core.io_utils import read_json, write_json
from devpod_core.workspace import OptionValue, options_from_dict, options_to_dict

CONTEXT_OPTION_AGENT_INJECT_TIMEOUT = "AGENT_INJECT_TIMEOUT"
CONTEXT_OPTION_REGISTRY_CACHE = "REGISTRY_CACHE"
CONTEXT_OPTION_DEFAULTS = {
    CONTEXT_OPTION_AGENT_INJECT_TIMEOUT: "5m",
    CONTEXT_OPTION_REGISTRY_CACHE: "",
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(raw: str) -> float:
    """Parse ``10s``/``5m``/``1h30m`` style durations into seconds."""
    text = (raw or "").strip()
    if not text:
        raise ValueError("empty duration")
    if text.isdigit():
        return float(text)
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{raw}'")
    return total


@dataclass
class ContextConfig:
    options: dict[str, OptionValue] = field(default_factory=dict)
    providers: dict[str, dict[str, OptionValue]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextConfig":
        providers = {
            str(name): options_from_dict((raw or {}).get("options"))
            for name, raw in (data.get("providers") or {}).items()
        }
        return cls(options=options_from_dict(data.get("options")), providers=providers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "options": options_to_dict(self.options),
            "providers": {
                name: {"options": options_to_dict(options)}
                for name, options in self.providers.items()
            },
        }


@dataclass
class DevpodConfig:
    default_context: str = paths.DEFAULT_CONTEXT
    contexts: dict[str, ContextConfig] = field(default_factory=dict)

    def current(self) -> ContextConfig:
        return self.contexts.setdefault(self.default_context, ContextConfig())

    def provider_options(self, provider_name: str) -> dict[str, OptionValue]:
        return dict(self.current().providers.get(provider_name, {}))

    def set_provider_options(self, provider_name: str, options: dict[str, OptionValue]) -> None:
        self.current().providers[provider_name] = dict(options)

    def context_option(self, name: str) -> str:
        option = self.current().options.get(name)
        if option is not None and option.value:
            return option.value
        return CONTEXT_OPTION_DEFAULTS.get(name, "")

    def context_duration(self, name: str) -> float:
        raw = self.context_option(name)
        try:
            return parse_duration(raw)
        except ValueError:
            return parse_duration(CONTEXT_OPTION_DEFAULTS.get(name, "0s"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DevpodConfig":
        return cls(
            default_context=str(data.get("defaultContext", "")) or paths.DEFAULT_CONTEXT,
            contexts={
                str(name): ContextConfig.from_dict(raw or {})
                for name, raw in (data.get("contexts") or {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "defaultContext": self.default_context,
            "contexts": {name: ctx.to_dict() for name, ctx in self.contexts.items()},
        }


def load_config(path: Path | None = None) -> DevpodConfig:
    data = read_json(path or paths.config_file())
    if not isinstance(data, dict):
        return DevpodConfig()
    return DevpodConfig.from_dict(data)


def save_config(config: DevpodConfig, path: Path | None = None) -> None:
    write_json(path or paths.config_file(), config.to_dict())

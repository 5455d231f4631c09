import logging
import os
import tomllib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import UnknownModel

if TYPE_CHECKING:  # pragma: no cover
    from .providers import BaseProvider

logger = logging.getLogger(__name__)

ProviderKind = Literal["openai", "modelhub"]
AdapterMode = Literal["responses", "gemini"]

# Credential environment variable used when a modelhub provider names none.
MODELHUB_DEFAULT_AUTH_ENV = "MODELHUB_API_KEY"


@dataclass(frozen=True)
class ModelEntry:
    key: str
    name: str
    max_tokens: int | None = None
    temperature: float | None = None
    alias: str | None = None
    supports_streaming: bool = True
    supports_tools: bool = True


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    kind: ProviderKind
    base_url: str
    api_key: str | None = None
    mode: AdapterMode = "responses"
    api_key_param: str = "ak"
    headers: Mapping[str, str] = field(default_factory=dict)
    models: Mapping[str, ModelEntry] = field(default_factory=dict)


@dataclass(frozen=True)
class RoutingTable:
    providers: Mapping[str, ProviderConfig]
    aliases: Mapping[str, str]


class _ModelModel(BaseModel):
    name: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    alias: str | None = None
    supports_streaming: bool = True
    supports_tools: bool = True

    model_config = ConfigDict(extra="forbid")


class _ProviderModel(BaseModel):
    kind: ProviderKind = "openai"
    base_url: str
    api_key: str | None = None
    auth_env: str | None = None
    mode: AdapterMode | None = None
    api_key_param: str = Field(default="ak", min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    models: Dict[str, _ModelModel]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check(self) -> "_ProviderModel":
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        if not self.models:
            raise ValueError("provider must define at least one model")
        if self.mode is not None and self.kind != "modelhub":
            raise ValueError("mode is only valid for modelhub providers")
        return self


class _RouterModel(BaseModel):
    aliases: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


def _format_validation_error(prefix: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{prefix}{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _resolve_api_key(name: str, parsed: _ProviderModel) -> str | None:
    if parsed.api_key:
        return parsed.api_key
    auth_env = parsed.auth_env
    if auth_env is None and parsed.kind == "modelhub":
        auth_env = MODELHUB_DEFAULT_AUTH_ENV
    if auth_env:
        raw_key = os.environ.get(auth_env, "").strip()
        if raw_key:
            return raw_key
        logger.warning("provider %s: credential env %s is not set", name, auth_env)
    return None


def _build_provider(name: str, parsed: _ProviderModel) -> ProviderConfig:
    models = {
        key: ModelEntry(
            key=key,
            name=entry.name or key,
            max_tokens=entry.max_tokens,
            temperature=entry.temperature,
            alias=entry.alias,
            supports_streaming=entry.supports_streaming,
            supports_tools=entry.supports_tools,
        )
        for key, entry in parsed.models.items()
    }
    return ProviderConfig(
        name=name,
        kind=parsed.kind,
        base_url=parsed.base_url.rstrip("/"),
        api_key=_resolve_api_key(name, parsed),
        mode=parsed.mode or "responses",
        api_key_param=parsed.api_key_param,
        headers=MappingProxyType(dict(parsed.headers)),
        models=MappingProxyType(models),
    )


def _split_path(path: str) -> tuple[str, str] | None:
    provider, sep, model = path.partition("/")
    if not sep or not provider or not model:
        return None
    return provider, model


def load_config(config_dir: str) -> RoutingTable:
    """Read providers.toml and router.yaml; any problem raises ValueError."""
    prov_path = os.path.join(config_dir, "providers.toml")
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderConfig] = {}
    problems: list[str] = []
    for name, raw in prov_data.items():
        if "/" in name:
            problems.append(f"{name}: provider names must not contain '/'")
            continue
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            problems.append(_format_validation_error(f"{name} -> ", exc))
            continue
        providers[name] = _build_provider(name, parsed)
    if problems:
        raise ValueError("; ".join(problems))
    if not providers:
        raise ValueError(f"{prov_path} defines no providers")

    router_path = os.path.join(config_dir, "router.yaml")
    rdata: object = {}
    if os.path.exists(router_path):
        with open(router_path, "r", encoding="utf-8") as f:
            rdata = yaml.safe_load(f) or {}
    try:
        parsed_router = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error("", exc)) from exc

    aliases: Dict[str, str] = {}
    for provider in providers.values():
        for entry in provider.models.values():
            if entry.alias:
                aliases[entry.alias] = f"{provider.name}/{entry.key}"
    for alias, target in parsed_router.aliases.items():
        existing = aliases.get(alias)
        if existing is not None and existing != target:
            raise ValueError(f"alias '{alias}' maps to both '{existing}' and '{target}'")
        aliases[alias] = target

    table = RoutingTable(providers=MappingProxyType(providers), aliases=MappingProxyType(aliases))
    validate_routing_table(table)
    return table


def validate_routing_table(table: RoutingTable) -> None:
    for alias, target in table.aliases.items():
        split = _split_path(target)
        if split is None:
            raise ValueError(f"alias '{alias}' must map to 'provider/model', got '{target}'")
        provider_name, model_key = split
        provider = table.providers.get(provider_name)
        if provider is None:
            available = ", ".join(sorted(table.providers)) or "<none>"
            raise ValueError(
                "alias '{alias}' references undefined provider '{provider}'. Available providers: {available}".format(
                    alias=alias,
                    provider=provider_name,
                    available=available,
                )
            )
        if model_key not in provider.models:
            raise ValueError(f"alias '{alias}' references undefined model '{model_key}' of provider '{provider_name}'")


class Router:
    """Resolves client model names to a provider instance and model entry.

    The alias table is consulted first, then ``provider/model``. There is no
    fuzzy matching: anything else is an ``UnknownModel``.
    """

    def __init__(self, table: RoutingTable, providers: Mapping[str, "BaseProvider"]):
        self.table = table
        self.providers = MappingProxyType(dict(providers))

    def resolve(self, model_name: str) -> tuple["BaseProvider", ModelEntry]:
        target = self.table.aliases.get(model_name, model_name)
        split = _split_path(target)
        if split is not None:
            provider_name, model_key = split
            provider = self.providers.get(provider_name)
            config = self.table.providers.get(provider_name)
            if provider is not None and config is not None:
                entry = config.models.get(model_key)
                if entry is not None:
                    return provider, entry
        raise UnknownModel(model_name)

    def list_model_paths(self) -> list[str]:
        return sorted(
            f"{provider.name}/{key}"
            for provider in self.table.providers.values()
            for key in provider.models
        )

    def aliases_for(self, path: str) -> list[str]:
        return sorted(alias for alias, target in self.table.aliases.items() if target == path)

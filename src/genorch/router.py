import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ProviderMisconfiguredError

logger = logging.getLogger(__name__)

FEATURES: tuple[str, ...] = ("image", "restricted_image", "text")
FEATURE_KIND: Dict[str, str] = {"image": "image", "restricted_image": "image", "text": "text"}
OrchestratorMode = Literal["strict", "fallback"]


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    auth_env: str | None = None
    enabled: bool = True
    requires_key: bool = True
    models: Dict[str, str] = field(default_factory=dict)
    rpm: int = 60
    concurrency: int = 4
    timeout_s: float = 120.0
    options: Dict[str, object] = field(default_factory=dict)

    @property
    def api_key(self) -> str | None:
        if not self.auth_env:
            return None
        value = os.environ.get(self.auth_env)
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def has_credentials(self) -> bool:
        return not self.requires_key or self.api_key is not None

    @property
    def qualifies(self) -> bool:
        return self.enabled and self.has_credentials


@dataclass
class FeatureDef:
    name: str
    backend: str | None = None
    model: str | None = None


@dataclass
class FeaturesConfig:
    features: Dict[str, FeatureDef]
    priorities: Dict[str, list[str]]
    mode: OrchestratorMode = "strict"


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    features: FeaturesConfig
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


class _ProviderModel(BaseModel):
    type: str = "openai"
    base_url: str = ""
    auth_env: str | None = None
    enabled: bool = True
    requires_key: bool | None = None
    models: Dict[str, str] = Field(default_factory=dict)
    rpm: int = Field(default=60, ge=1)
    concurrency: int = Field(default=4, ge=1)
    timeout_s: float = Field(default=120.0, gt=0)
    options: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class _FeatureModel(BaseModel):
    backend: str | None = None
    model: str | None = None

    model_config = ConfigDict(extra="forbid")


class _OrchestratorModel(BaseModel):
    mode: OrchestratorMode = "strict"

    model_config = ConfigDict(extra="forbid")


class _FeaturesFileModel(BaseModel):
    features: Dict[str, _FeatureModel] = Field(default_factory=dict)
    priorities: Dict[str, list[str]] = Field(default_factory=dict)
    orchestrator: _OrchestratorModel = Field(default_factory=_OrchestratorModel)

    model_config = ConfigDict(extra="forbid")

    @field_validator("features")
    @classmethod
    def _known_features(cls, value: Dict[str, _FeatureModel]) -> Dict[str, _FeatureModel]:
        unknown = sorted(set(value) - set(FEATURES))
        if unknown:
            raise ValueError(f"unknown feature(s): {', '.join(unknown)}")
        return value

    @field_validator("priorities")
    @classmethod
    def _known_priorities(cls, value: Dict[str, list[str]]) -> Dict[str, list[str]]:
        unknown = sorted(set(value) - set(FEATURES) - {"primary"})
        if unknown:
            raise ValueError(f"unknown priority list(s): {', '.join(unknown)}")
        return value


def _format_validation_error(exc: ValidationError, prefix: str = "") -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        if prefix:
            location = f"{prefix} -> {location}"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _providers_filename(use_dummy: bool) -> str:
    return "providers.dummy.toml" if use_dummy else "providers.toml"


def _features_path(config_dir: str, use_dummy: bool) -> str:
    if use_dummy:
        dummy_path = os.path.join(config_dir, "features.dummy.yaml")
        if os.path.exists(dummy_path):
            return dummy_path
    return os.path.join(config_dir, "features.yaml")


def _load_providers(path: str) -> Dict[str, ProviderDef]:
    with open(path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in prov_data.items():
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(_format_validation_error(exc, prefix=name)) from exc
        requires_key = parsed.requires_key
        if requires_key is None:
            requires_key = parsed.type not in ("ollama", "dummy")
        providers[name] = ProviderDef(
            name=name,
            type=parsed.type,
            base_url=parsed.base_url,
            auth_env=parsed.auth_env,
            enabled=parsed.enabled,
            requires_key=requires_key,
            models=dict(parsed.models),
            rpm=parsed.rpm,
            concurrency=parsed.concurrency,
            timeout_s=parsed.timeout_s,
            options=dict(parsed.options),
        )
    return providers


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path = os.path.join(config_dir, _providers_filename(use_dummy))
    providers = _load_providers(prov_path)
    features_path = _features_path(config_dir, use_dummy)
    with open(features_path, "r", encoding="utf-8") as f:
        fdata = yaml.safe_load(f) or {}
    try:
        parsed = _FeaturesFileModel.model_validate(fdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    features = {
        name: FeatureDef(
            name=name,
            backend=parsed.features[name].backend if name in parsed.features else None,
            model=parsed.features[name].model if name in parsed.features else None,
        )
        for name in FEATURES
    }
    priorities = {name: list(order) for name, order in parsed.priorities.items()}
    for name in ("primary",) + FEATURES:
        if name not in priorities:
            priorities[name] = list(providers)
    cfg = FeaturesConfig(features=features, priorities=priorities, mode=parsed.orchestrator.mode)
    validate_features_config(cfg, providers)
    mtimes = {
        "providers": os.stat(prov_path).st_mtime,
        "features": os.stat(features_path).st_mtime,
    }
    return LoadedConfig(
        providers=providers,
        features=cfg,
        mtimes=mtimes,
        watch_paths=(prov_path, features_path),
    )


def validate_features_config(cfg: FeaturesConfig, providers: Dict[str, ProviderDef]) -> None:
    available = ", ".join(sorted(providers)) or "<none>"
    for list_name, order in cfg.priorities.items():
        for provider_name in order:
            if provider_name not in providers:
                raise ValueError(
                    "Priority list '{name}' references undefined provider '{provider}'. Available providers: {available}".format(
                        name=list_name,
                        provider=provider_name,
                        available=available,
                    )
                )
    for feature in cfg.features.values():
        if feature.backend is not None and feature.backend not in providers:
            raise ValueError(
                "Feature '{name}' references undefined provider '{provider}'. Available providers: {available}".format(
                    name=feature.name,
                    provider=feature.backend,
                    available=available,
                )
            )


class BackendRegistry:
    def __init__(
        self,
        loaded: LoadedConfig,
        *,
        config_dir: str | None = None,
        use_dummy: bool = False,
    ):
        self.providers = loaded.providers
        self.cfg = loaded.features
        self._config_dir = config_dir
        self._use_dummy = use_dummy
        self._mtimes = dict(loaded.mtimes)

    @classmethod
    def from_dir(cls, config_dir: str, *, use_dummy: bool = False) -> "BackendRegistry":
        return cls(load_config(config_dir, use_dummy=use_dummy), config_dir=config_dir, use_dummy=use_dummy)

    @property
    def mode(self) -> OrchestratorMode:
        return self.cfg.mode

    def get(self, name: str) -> ProviderDef | None:
        return self.providers.get(name)

    def _first_qualifying(self, list_name: str) -> str | None:
        for name in self.cfg.priorities.get(list_name, ()):
            provider = self.providers.get(name)
            if provider is not None and provider.qualifies:
                return name
        return None

    def primary_backend(self) -> str | None:
        for name in self.cfg.priorities.get("primary", ()):
            provider = self.providers.get(name)
            if provider is not None and provider.enabled:
                return name
        return None

    def image_backend(self, restricted: bool = False) -> str | None:
        return self._first_qualifying("restricted_image" if restricted else "image")

    def text_backend(self) -> str | None:
        return self._first_qualifying("text")

    def select(self, feature: str) -> str | None:
        configured = self.cfg.features.get(feature)
        if configured is not None and configured.backend is not None:
            provider = self.providers.get(configured.backend)
            if provider is not None and provider.qualifies:
                return configured.backend
        if feature == "text":
            return self.text_backend()
        return self.image_backend(restricted=feature == "restricted_image")

    def fallback_order(self, feature: str) -> list[str]:
        order: list[str] = []
        first = self.select(feature)
        if first is not None:
            order.append(first)
        for name in self.cfg.priorities.get(feature, ()):
            provider = self.providers.get(name)
            if provider is None or not provider.qualifies or name in order:
                continue
            order.append(name)
        return order

    def resolve_model(self, backend: str, feature: str) -> str:
        provider = self.providers.get(backend)
        if provider is None:
            raise ProviderMisconfiguredError(f"unknown backend '{backend}'", backend=backend)
        configured = self.cfg.features.get(feature)
        if configured is not None and configured.backend == backend and configured.model:
            return configured.model
        model = provider.models.get(feature) or provider.models.get(FEATURE_KIND.get(feature, feature))
        if not model:
            raise ProviderMisconfiguredError(
                f"no model configured for feature '{feature}' on backend '{backend}'",
                backend=backend,
            )
        return model

    def refresh(self) -> bool:
        if self._config_dir is None:
            return False
        prov_path = os.path.join(self._config_dir, _providers_filename(self._use_dummy))
        features_path = _features_path(self._config_dir, self._use_dummy)
        try:
            providers_mtime = os.stat(prov_path).st_mtime
            features_mtime = os.stat(features_path).st_mtime
        except FileNotFoundError:
            return False
        if (
            providers_mtime == self._mtimes.get("providers")
            and features_mtime == self._mtimes.get("features")
        ):
            return False
        loaded = load_config(self._config_dir, use_dummy=self._use_dummy)
        self.providers = loaded.providers
        self.cfg = loaded.features
        self._mtimes = dict(loaded.mtimes)
        logger.info("backend configuration reloaded from %s", self._config_dir)
        return True

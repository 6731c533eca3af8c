"""Settings loader for the db_analyst application.

All options live in a single ``DB_ANALYST`` dict in the Django settings module::

    DB_ANALYST = {
        "VALIDATION_MODE": "strict",
        "ALLOWED_SCHEMAS": ["public"],
        "LLM_PROVIDER": "openai",
        "LLM_API_KEY": "...",
        "AGENTS": {
            "sales": {"NAME": "Sales analyst", "TABLES": ["orders", "customers"]},
        },
    }

``load_settings`` turns that dict into an immutable ``AnalystSettings`` object
which is then handed to the services explicitly.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from django.conf import settings

from .constants import DEFAULT_SCHEMA, ValidationModes
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "openai")

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-haiku-latest",
    "openai": "gpt-4o",
}


@dataclass(frozen=True)
class AnalystAgent:
    """A named analyst persona scoped to a subset of tables.

    An empty *tables* tuple leaves the agent unrestricted; *system_prompt*
    replaces the generated persona text when given.
    """

    agent_id: str
    name: str
    system_prompt: Optional[str] = None
    tables: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AnalystSettings:
    """Resolved configuration for one running application."""

    validation_mode: str = ValidationModes.STRICT
    allowed_schemas: Tuple[str, ...] = (DEFAULT_SCHEMA,)
    allowed_leading_keywords: Optional[Tuple[str, ...]] = None
    forbidden_keywords: Optional[Tuple[str, ...]] = None
    forbid_semicolon: bool = True
    auto_execute_while_streaming: bool = False
    enable_websockets: bool = False
    conversation_storage_type: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    conversation_ttl_seconds: int = 60 * 60 * 24 * 7
    context_limit: int = 10
    llm_provider: str = "anthropic"
    llm_model: str = DEFAULT_MODELS["anthropic"]
    llm_api_key: Optional[str] = field(default=None, repr=False)
    llm_max_tokens: int = 2048
    database_url: Optional[str] = field(default=None, repr=False)
    agents: Tuple[AnalystAgent, ...] = ()

    @property
    def default_schema(self) -> str:
        return self.allowed_schemas[0] if self.allowed_schemas else DEFAULT_SCHEMA

    def get_agent(self, agent_id: Optional[str]) -> Optional[AnalystAgent]:
        if not agent_id:
            return None
        return next((a for a in self.agents if a.agent_id == agent_id), None)


def _database_url_from_django() -> Optional[str]:
    """Build a PostgreSQL URL from ``settings.DATABASES['default']``."""
    databases = getattr(settings, "DATABASES", {}) or {}
    db_config = databases.get("default")
    if not db_config or "postgresql" not in db_config.get("ENGINE", ""):
        return None

    db_host = db_config.get("HOST") or "localhost"
    db_port = db_config.get("PORT") or "5432"
    db_name = db_config.get("NAME", "")
    db_user = db_config.get("USER", "")
    db_password = db_config.get("PASSWORD", "")
    logger.info(
        f"Database connection configured for: postgresql://<user>:<password>@{db_host}:{db_port}/{db_name}"
    )
    return f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"


def _as_tuple(value, upper: bool = False) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    items = tuple(str(v).strip() for v in value if str(v).strip())
    return tuple(v.upper() for v in items) if upper else items


def _load_agents(value) -> Tuple[AnalystAgent, ...]:
    """Build agents from ``{"<id>": {"NAME", "SYSTEM_PROMPT", "TABLES"}}``.

    Table names may be schema-qualified; only the table part is kept.

    Raises:
        ConfigurationError: If an agent entry is not a dict.
    """
    agents = []
    for agent_id, agent_cfg in (value or {}).items():
        if not isinstance(agent_cfg, dict):
            raise ConfigurationError(f"Agent {agent_id!r} must be configured with a dict")
        tables = _as_tuple(agent_cfg.get("TABLES")) or ()
        agents.append(
            AnalystAgent(
                agent_id=str(agent_id),
                name=agent_cfg.get("NAME") or str(agent_id),
                system_prompt=agent_cfg.get("SYSTEM_PROMPT") or None,
                tables=tuple(t.rsplit(".", 1)[-1].lower() for t in tables),
            )
        )
    return tuple(agents)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> AnalystSettings:
    """Read ``settings.DB_ANALYST`` (plus *overrides*) into ``AnalystSettings``.

    Raises:
        ConfigurationError: For an unknown validation mode or LLM provider, or
            a malformed agent entry.
    """
    cfg = dict(getattr(settings, "DB_ANALYST", {}) or {})
    if overrides:
        cfg.update(overrides)

    mode = str(cfg.get("VALIDATION_MODE", ValidationModes.STRICT)).lower()
    if mode not in (ValidationModes.STRICT, ValidationModes.PERMISSIVE):
        raise ConfigurationError(f"Unsupported VALIDATION_MODE: {mode}")

    provider = str(cfg.get("LLM_PROVIDER", "anthropic")).lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(f"Unsupported LLM provider: {provider}")

    schemas = _as_tuple(cfg.get("ALLOWED_SCHEMAS")) or (DEFAULT_SCHEMA,)

    return AnalystSettings(
        validation_mode=mode,
        allowed_schemas=tuple(s.lower() for s in schemas),
        allowed_leading_keywords=_as_tuple(
            cfg.get("ALLOWED_LEADING_KEYWORDS"), upper=True
        ),
        forbidden_keywords=_as_tuple(cfg.get("FORBIDDEN_KEYWORDS"), upper=True),
        forbid_semicolon=bool(cfg.get("FORBID_SEMICOLON", True)),
        auto_execute_while_streaming=bool(
            cfg.get("AUTO_EXECUTE_WHILE_STREAMING", False)
        ),
        enable_websockets=bool(cfg.get("ENABLE_WEBSOCKETS", False)),
        conversation_storage_type=str(
            cfg.get("CONVERSATION_STORAGE_TYPE", "memory")
        ).lower(),
        redis_url=cfg.get("REDIS_URL", "redis://localhost:6379/0"),
        conversation_ttl_seconds=int(
            cfg.get("CONVERSATION_TTL_SECONDS", 60 * 60 * 24 * 7)
        ),
        context_limit=int(cfg.get("CONTEXT_LIMIT", 10)),
        llm_provider=provider,
        llm_model=cfg.get("LLM_MODEL") or DEFAULT_MODELS[provider],
        llm_api_key=cfg.get("LLM_API_KEY"),
        llm_max_tokens=int(cfg.get("LLM_MAX_TOKENS", 2048)),
        database_url=cfg.get("DATABASE_URL") or _database_url_from_django(),
        agents=_load_agents(cfg.get("AGENTS")),
    )

"""
ABAP Remote FS Auth - Main Application Entry Point

Local token broker for the ABAP remote filesystem extension: serves OAuth
access tokens for the configured cloud connections over a small FastAPI app.
"""

import argparse
import os
import sys
from contextlib import asynccontextmanager
from logging.config import dictConfig
from pathlib import Path
from typing import Dict, Optional

import fastapi
import uvicorn
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

current_dir = os.path.dirname(os.path.abspath(__file__))
if current_dir not in sys.path:
    sys.path.insert(0, current_dir)

from log_utils import (
    ColoredConsoleFormatter, JSONFormatter, LogEvent, LogRecord,
    error, info, init_logger, warning
)
from oauth import (
    LOGON_TIMEOUT_SECONDS, LoginProvider, OAuthManager, RemoteConfig, load_login_provider
)
from routers.health import create_health_router
from routers.oauth import create_oauth_router
from routers.scm import create_scm_router
from scm import RepoStore, WorkspaceState

load_dotenv()

_console = Console()

PROJECT_ROOT = Path(__file__).parent.parent

# ===== CONFIGURATION =====

class Settings:
    """Application settings with defaults, overridden by the ``settings`` block."""

    def __init__(self, config: Optional[dict] = None):
        self.log_level: str = "INFO"
        self.log_file_path: str = ""
        self.log_color: bool = True
        self.host: str = "127.0.0.1"
        self.port: int = 9191
        self.app_name: str = "ABAP Remote FS Auth"
        self.app_version: str = "0.2.0"
        self.logon_timeout: float = LOGON_TIMEOUT_SECONDS
        self.login_provider: str = ""
        self.workspace_state_path: str = ".abapfs/workspace-state.yaml"

        if config:
            self.apply(config.get('settings') or {})

    def apply(self, settings_config: dict):
        for key, value in settings_config.items():
            if not hasattr(self, key):
                continue
            if key in ("log_file_path", "workspace_state_path") and value and not os.path.isabs(value):
                value = str(PROJECT_ROOT / value)
            setattr(self, key, value)
        self.logon_timeout = float(self.logon_timeout)
        self.port = int(self.port)


def _expand_env(value):
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def load_config(config_path: str = "config.yaml") -> dict:
    """Load full configuration from file.

    ${VAR} references are filled from the environment (and .env).
    """
    path = Path(config_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return _expand_env(yaml.safe_load(f) or {})
    except FileNotFoundError:
        warning(LogRecord(
            event=LogEvent.CONFIG_LOADED.value,
            message=f"Config file {path} not found, using defaults",
        ))
        return {}


def load_connections(config: dict) -> Dict[str, RemoteConfig]:
    """Parse the ``connections`` list; invalid entries are skipped."""
    connections: Dict[str, RemoteConfig] = {}
    for entry in config.get('connections') or []:
        try:
            conf = RemoteConfig.model_validate(entry)
        except ValidationError as e:
            warning(LogRecord(
                event=LogEvent.CONFIG_CONNECTION_INVALID.value,
                message=f"Skipping invalid connection entry {entry.get('name', '?') if isinstance(entry, dict) else entry!r}",
            ), exc=e)
            continue
        if conf.conn_id in connections:
            warning(LogRecord(
                event=LogEvent.CONFIG_CONNECTION_INVALID.value,
                message=f"Duplicate connection '{conf.name}', keeping the first one",
                conn_id=conf.conn_id,
            ))
            continue
        connections[conf.conn_id] = conf

    info(LogRecord(
        event=LogEvent.CONFIG_LOADED.value,
        message=f"Loaded {len(connections)} connections",
    ))
    return connections


def resolve_login_provider(settings: Settings) -> Optional[LoginProvider]:
    if not settings.login_provider:
        return None
    try:
        return load_login_provider(settings.login_provider)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        error(LogRecord(
            event=LogEvent.LOGIN_PROVIDER_LOAD_FAILED.value,
            message=f"Failed to load login provider '{settings.login_provider}'",
        ), exc=e)
        return None


def setup_logging(settings: Settings) -> dict:
    """Setup logging configuration."""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "colored_console": {"()": ColoredConsoleFormatter, "use_colors": settings.log_color},
            "json": {"()": JSONFormatter},
            "uvicorn_access": {"()": "log_utils.formatters.UvicornAccessFormatter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.log_level,
                "formatter": "colored_console",
                "stream": "ext://sys.stdout",
            },
            "uvicorn_access": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "uvicorn_access",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            settings.app_name: {
                "level": settings.log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["uvicorn_access"],
                "propagate": False,
            },
        },
    }

    if settings.log_file_path:
        log_config["handlers"]["file"] = {
            "class": "logging.FileHandler",
            "level": settings.log_level,
            "formatter": "json",
            "filename": settings.log_file_path,
            "mode": "a",
            "encoding": "utf-8",
        }
        log_config["loggers"][settings.app_name]["handlers"].append("file")

    dictConfig(log_config)
    return log_config

# ===== FASTAPI APPLICATION =====

@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    info(LogRecord(
        event=LogEvent.FASTAPI_STARTUP_COMPLETE.value,
        message="FastAPI application startup complete",
    ))

    yield

    info(LogRecord(
        event=LogEvent.FASTAPI_SHUTDOWN.value,
        message="FastAPI application shutting down",
    ))
    await app.state.oauth_manager.shutdown()


def create_app(
    settings: Settings,
    connections: Dict[str, RemoteConfig],
    oauth_manager: Optional[OAuthManager] = None,
    repo_store: Optional[RepoStore] = None,
) -> fastapi.FastAPI:
    """Create the FastAPI application around one OAuth manager."""
    if oauth_manager is None:
        oauth_manager = OAuthManager(
            login_provider=resolve_login_provider(settings),
            logon_timeout=settings.logon_timeout,
        )
    if repo_store is None:
        repo_store = RepoStore(WorkspaceState(settings.workspace_state_path))

    app = fastapi.FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="OAuth token broker for ABAP remote filesystem connections",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.connections = connections
    app.state.oauth_manager = oauth_manager
    app.state.repo_store = repo_store

    app.include_router(create_oauth_router(oauth_manager, connections, repo_store))
    app.include_router(create_scm_router(repo_store, connections))
    app.include_router(create_health_router(oauth_manager, connections, settings.app_name, settings.app_version))
    return app

# ===== STARTUP BANNER =====

def display_startup_banner(settings: Settings, connections: Dict[str, RemoteConfig]):
    connections_text = ""
    oauth_count = 0
    for conf in connections.values():
        if conf.oauth is not None:
            oauth_count += 1
            saved = ", saved credentials" if conf.oauth.save_credentials else ""
            connections_text += f"\n   [oauth] {conf.name}: {conf.oauth.login_url}{saved}"
        else:
            connections_text += f"\n   [basic] {conf.name}: {conf.url or '-'}"

    provider_display = settings.login_provider or "not configured"
    config_text = Text.assemble(
        ("   Version       : ", "default"),
        (f"v{settings.app_version}", "bold cyan"),
        ("\n   Connections   : ", "default"),
        (f"{oauth_count}/{len(connections)} use OAuth", "bold green" if connections else "bold red"),
        (connections_text, "default"),
        ("\n   Login Provider: ", "default"),
        (provider_display, "yellow" if settings.login_provider else "dim"),
        ("\n   Logon Timeout : ", "default"),
        (f"{settings.logon_timeout:g}s", "default"),
        ("\n   Log Level     : ", "default"),
        (settings.log_level.upper(), "yellow"),
        ("\n   Log File      : ", "default"),
        (settings.log_file_path or "Disabled", "dim"),
        ("\n   Listening on  : ", "default"),
        (f"http://{settings.host}:{settings.port}", "default"),
    )

    _console.print(Panel(
        config_text,
        title=f"{settings.app_name} Configuration",
        border_style="blue",
        expand=False,
    ))
    _console.print(Rule("Starting uvicorn server ...", style="dim blue"))

# ===== COMMAND LINE INTERFACE =====

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='ABAP Remote FS Auth token broker')
    parser.add_argument(
        '--config',
        type=str,
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument('--port', type=int, help='Port to run the server on (overrides config file)')
    parser.add_argument('--host', type=str, help='Host to bind the server to (overrides config file)')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config)
    settings = Settings(config)
    if args.port:
        settings.port = args.port
    if args.host:
        settings.host = args.host

    init_logger(settings.app_name)
    log_config = setup_logging(settings)

    connections = load_connections(config)
    app = create_app(settings, connections)

    display_startup_banner(settings, connections)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=log_config)


if __name__ == "__main__":
    main()

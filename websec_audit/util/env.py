"""Load analyzer configuration from an optional .env file.

Unlike a scan target, nothing here is required: a missing .env just means
the production defaults in AnalyzerConfig apply.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from websec_audit.util.types import AnalyzerConfig


def load_config(env_file: Optional[Path] = None) -> AnalyzerConfig:
    """Build an AnalyzerConfig from .env overrides.

    Looks for .env in the current working directory unless a path is given.
    Values already present in the process environment win over the file.
    """
    env_file = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    defaults = AnalyzerConfig()
    return AnalyzerConfig(
        http_timeout=float(os.getenv("HTTP_TIMEOUT", defaults.http_timeout)),
        connect_timeout=float(os.getenv("CONNECT_TIMEOUT", defaults.connect_timeout)),
        tls_timeout=float(os.getenv("TLS_TIMEOUT", defaults.tls_timeout)),
        tls_fallback_timeout=float(os.getenv("TLS_FALLBACK_TIMEOUT", defaults.tls_fallback_timeout)),
        dns_timeout=float(os.getenv("DNS_TIMEOUT", defaults.dns_timeout)),
        max_retries=int(os.getenv("MAX_RETRIES", defaults.max_retries)),
        retry_delay=float(os.getenv("RETRY_DELAY", defaults.retry_delay)),
        max_redirects=int(os.getenv("MAX_REDIRECTS", defaults.max_redirects)),
    )


def get_log_level(default: int = logging.INFO) -> int:
    """Resolve LOG_LEVEL (a name like DEBUG) to a logging level."""
    name = os.getenv("LOG_LEVEL")
    if not name:
        return default
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default

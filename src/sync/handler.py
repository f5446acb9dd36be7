from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from common.edupoint import DEFAULT_BASE_URL, EduPointClient
from state.supabase_store import ENV_SUPABASE_KEY, ENV_SUPABASE_URL, SupabaseGradeStore
from state.vault import CredentialVault
from sync.orchestrator import SyncOrchestrator
from sync.reconciler import GradeReconciler


logger = logging.getLogger(__name__)

ENV_SCHEDULER_KEY = "SCHEDULER_KEY"
ENV_PARAM_PREFIX = "PARAM_PREFIX"  # optional; enables SSM lookups
ENV_PORTAL_BASE_URL = "PORTAL_BASE_URL"
ENV_LOG_LEVEL = "LOG_LEVEL"

# SSM parameter names under PARAM_PREFIX; env vars take precedence
SSM_SCHEDULER_KEY = "scheduler_key"
SSM_SUPABASE_URL = "supabase_url"
SSM_SUPABASE_KEY = "supabase_service_role_key"

_NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once; Lambda installs its own handler, so only set levels there."""
    log_level = getattr(logging, (level or _getenv(ENV_LOG_LEVEL, "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stdout,
        )
    root.setLevel(log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass(frozen=True)
class SyncConfig:
    scheduler_key: str
    supabase_url: str
    supabase_service_key: str
    portal_base_url: str = DEFAULT_BASE_URL

    def __repr__(self) -> str:
        return f"SyncConfig(supabase_url={self.supabase_url!r}, portal_base_url={self.portal_base_url!r})"


def load_config() -> SyncConfig:
    """Resolve configuration from env, falling back to SSM under PARAM_PREFIX.

    A missing scheduler key is fatal: no run may start without it.
    """
    prefix = _getenv(ENV_PARAM_PREFIX)
    params: Dict[str, Optional[str]] = {}
    if prefix:
        params = _load_ssm_params(prefix, [SSM_SCHEDULER_KEY, SSM_SUPABASE_URL, SSM_SUPABASE_KEY])

    scheduler_key = _getenv(ENV_SCHEDULER_KEY) or params.get(SSM_SCHEDULER_KEY)
    supabase_url = _getenv(ENV_SUPABASE_URL) or params.get(SSM_SUPABASE_URL)
    supabase_key = _getenv(ENV_SUPABASE_KEY) or params.get(SSM_SUPABASE_KEY)

    return SyncConfig(
        scheduler_key=_require(scheduler_key, ENV_SCHEDULER_KEY),
        supabase_url=_require(supabase_url, ENV_SUPABASE_URL),
        supabase_service_key=_require(supabase_key, ENV_SUPABASE_KEY),
        portal_base_url=_getenv(ENV_PORTAL_BASE_URL, DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
    )


def run_once(now: Optional[datetime] = None, *, config: Optional[SyncConfig] = None) -> Dict[str, Any]:
    """Run a single grade sync for the schedule slot due at `now` (default: current time)."""
    cfg = config or load_config()
    vault = CredentialVault(cfg.scheduler_key)

    with SupabaseGradeStore(url=cfg.supabase_url, service_key=cfg.supabase_service_key) as store, EduPointClient(
        base_url=cfg.portal_base_url
    ) as portal:
        orchestrator = SyncOrchestrator(
            store=store,
            vault=vault,
            portal=portal,
            reconciler=GradeReconciler(store),
        )
        return orchestrator.run(now)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry, invoked every 15 minutes by an EventBridge rule.

    Environment:
    - SCHEDULER_KEY, SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY (or SSM under PARAM_PREFIX)
    - PORTAL_BASE_URL (optional), LOG_LEVEL (optional, default INFO)
    """
    setup_logging()
    return run_once()

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from portcullis.config import Environment, Settings
from portcullis.service.cors import CorsConfig
from portcullis.service.csp import ContentPolicyConfig

CSP_REPORT_PATH = "/v1/security/csp-report"

_LOCAL_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:5173",
)


@dataclass(frozen=True)
class SecurityPreset:
    cors_origins: Tuple[str, ...]
    csp_enabled: bool
    csp_report_only: bool
    csp_report_uri: Optional[str] = None
    csp_upgrade_insecure_requests: bool = False


PRESETS: Dict[Environment, SecurityPreset] = {
    Environment.DEVELOPMENT: SecurityPreset(_LOCAL_ORIGINS, True, True),
    Environment.TEST: SecurityPreset(_LOCAL_ORIGINS, True, True),
    Environment.STAGING: SecurityPreset((), True, True, CSP_REPORT_PATH),
    Environment.PRODUCTION: SecurityPreset((), True, False, CSP_REPORT_PATH, True),
}


def _pick(explicit, fallback):
    return fallback if explicit is None else explicit


def cors_config_for(settings: Settings) -> CorsConfig:
    """Single merge step: explicit settings win, the preset fills the gaps."""
    preset = PRESETS[settings.environment]
    return CorsConfig(
        enabled=settings.cors_enabled,
        origins=list(settings.cors_allow_origins or preset.cors_origins),
        credentials=settings.cors_allow_credentials,
        methods=list(settings.cors_allow_methods),
        allowed_headers=list(settings.cors_allow_headers),
        exposed_headers=list(settings.cors_expose_headers),
        max_age=settings.cors_max_age,
        production=settings.is_production,
    )


def csp_config_for(settings: Settings) -> ContentPolicyConfig:
    preset = PRESETS[settings.environment]
    return ContentPolicyConfig(
        enabled=_pick(settings.csp_enabled, preset.csp_enabled),
        directives={
            name: srcs if isinstance(srcs, bool) else list(srcs)
            for name, srcs in settings.csp_directives.items()
        },
        report_only=_pick(settings.csp_report_only, preset.csp_report_only),
        report_uri=_pick(settings.csp_report_uri, preset.csp_report_uri),
        upgrade_insecure_requests=_pick(
            settings.csp_upgrade_insecure_requests, preset.csp_upgrade_insecure_requests
        ),
        block_all_mixed_content=settings.csp_block_all_mixed_content,
        use_nonce=settings.csp_use_nonce,
    )

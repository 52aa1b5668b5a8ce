from __future__ import annotations

import base64
import re
import secrets
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from portcullis.logging import get_logger
from portcullis.service.cors import is_safe_url
from portcullis.service.errors import ConfigurationError

logger = get_logger(__name__)

ENFORCING_HEADER = "Content-Security-Policy"
REPORT_ONLY_HEADER = "Content-Security-Policy-Report-Only"

NONCE_BYTES = 16
NONCE_DIRECTIVES = ("script-src", "style-src")
BOOLEAN_DIRECTIVES = ("upgrade-insecure-requests", "block-all-mixed-content")

DEFAULT_DIRECTIVES: Dict[str, Tuple[str, ...]] = {
    "default-src": ("'self'",),
    "script-src": ("'self'",),
    "style-src": ("'self'",),
    "img-src": ("'self'", "data:", "https:"),
    "connect-src": ("'self'",),
    "font-src": ("'self'",),
    "object-src": ("'none'",),
    "media-src": ("'self'",),
    "frame-src": ("'none'",),
    "frame-ancestors": ("'none'",),
    "form-action": ("'self'",),
    "base-uri": ("'self'",),
    "worker-src": ("'self'",),
    "manifest-src": ("'self'",),
}

KNOWN_DIRECTIVES = frozenset(DEFAULT_DIRECTIVES) | frozenset(
    {
        "child-src",
        "prefetch-src",
        "script-src-elem",
        "script-src-attr",
        "style-src-elem",
        "style-src-attr",
        "sandbox",
        "report-to",
        "require-trusted-types-for",
        "trusted-types",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
# A source expression may not terminate its directive or the header
_FORBIDDEN_SOURCE_CHARS = re.compile(r"[;,\r\n]")


def normalize_directive_name(name: str) -> str:
    """``scriptSrc``, ``script_src`` and ``script-src`` all become ``script-src``."""
    kebab = _CAMEL_BOUNDARY.sub("-", name.strip()).replace("_", "-")
    return kebab.lower()


def generate_nonce() -> str:
    return base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")


@dataclass
class ContentPolicyConfig:
    """Every recognised CSP option; overrides replace defaults per directive."""

    enabled: bool = True
    directives: Dict[str, Union[bool, List[str]]] = field(default_factory=dict)
    report_only: bool = False
    report_uri: Optional[str] = None
    upgrade_insecure_requests: bool = False
    block_all_mixed_content: bool = False
    use_nonce: bool = False


@dataclass(frozen=True)
class ContentPolicy:
    enabled: bool
    directives: Tuple[Tuple[str, Tuple[str, ...]], ...]
    report_only: bool
    report_uri: Optional[str]
    upgrade_insecure_requests: bool
    block_all_mixed_content: bool
    use_nonce: bool

    @property
    def header_name(self) -> str:
        return REPORT_ONLY_HEADER if self.report_only else ENFORCING_HEADER

    def render(self, nonce: Optional[str] = None) -> str:
        """Serialize the policy, adding ``'nonce-<nonce>'`` where scripts and styles load."""
        clauses: List[str] = []
        for name, sources in self.directives:
            if nonce and name in NONCE_DIRECTIVES and sources != ("'none'",):
                sources = sources + (f"'nonce-{nonce}'",)
            clauses.append(f"{name} {' '.join(sources)}")
        if self.upgrade_insecure_requests:
            clauses.append("upgrade-insecure-requests")
        if self.block_all_mixed_content:
            clauses.append("block-all-mixed-content")
        if self.report_uri:
            clauses.append(f"report-uri {self.report_uri}")
        return "; ".join(clauses)

    def header(self, nonce: Optional[str] = None) -> Tuple[str, str]:
        return self.header_name, self.render(nonce)


class ContentPolicyBuilder:
    """Merge directive overrides onto the secure defaults and compile once."""

    @staticmethod
    def merge(
        overrides: Mapping[str, Union[bool, Iterable[str]]]
    ) -> Tuple[Dict[str, Tuple[str, ...]], Dict[str, bool]]:
        directives = dict(DEFAULT_DIRECTIVES)
        flags: Dict[str, bool] = {}
        for raw_name, sources in (overrides or {}).items():
            name = normalize_directive_name(raw_name)
            if name in BOOLEAN_DIRECTIVES:
                if not isinstance(sources, bool):
                    raise ConfigurationError(
                        f"CSP directive {name} takes true or false, got {sources!r}",
                        setting="csp_directives",
                    )
                flags[name] = sources
                continue
            if name not in KNOWN_DIRECTIVES:
                logger.warning("csp_directive_ignored", directive=raw_name)
                continue
            if isinstance(sources, str):
                sources = [sources]
            elif isinstance(sources, bool):
                raise ConfigurationError(
                    f"CSP directive {name} takes a source list, got {sources!r}",
                    setting="csp_directives",
                )
            cleaned = tuple(s.strip() for s in sources if s and s.strip())
            for source in cleaned:
                if _FORBIDDEN_SOURCE_CHARS.search(source):
                    raise ConfigurationError(
                        f"invalid CSP source for {name}: {source!r}", setting="csp_directives"
                    )
            directives[name] = cleaned
        return directives, flags

    @classmethod
    def compile(cls, config: ContentPolicyConfig) -> ContentPolicy:
        directives, flags = cls.merge(config.directives)
        report_uri = (config.report_uri or "").strip() or None
        if report_uri and (not is_safe_url(report_uri) or _FORBIDDEN_SOURCE_CHARS.search(report_uri)):
            raise ConfigurationError(
                f"CSP report URI must be a path or http(s) URL: {report_uri!r}",
                setting="csp_report_uri",
            )
        return ContentPolicy(
            enabled=config.enabled,
            # empty source lists would block everything, so they are dropped
            directives=tuple((name, srcs) for name, srcs in directives.items() if srcs),
            report_only=config.report_only,
            report_uri=report_uri,
            upgrade_insecure_requests=flags.get(
                "upgrade-insecure-requests", config.upgrade_insecure_requests
            ),
            block_all_mixed_content=flags.get(
                "block-all-mixed-content", config.block_all_mixed_content
            ),
            use_nonce=config.use_nonce,
        )

    @classmethod
    def build(cls, config: ContentPolicyConfig) -> str:
        return cls.compile(config).render()

"""Content-Security-Policy compilation."""

import base64
from unittest.mock import patch

import pytest

from portcullis.service import csp
from portcullis.service.csp import (
    ENFORCING_HEADER,
    REPORT_ONLY_HEADER,
    ContentPolicyBuilder,
    ContentPolicyConfig,
    generate_nonce,
    normalize_directive_name,
)
from portcullis.service.errors import ConfigurationError


def clauses(rendered: str) -> list:
    return rendered.split("; ")


class TestContentPolicyBuilder:
    def test_defaults_with_report_uri(self):
        rendered = ContentPolicyBuilder.build(ContentPolicyConfig(report_uri="/csp"))
        parts = clauses(rendered)
        assert parts[0] == "default-src 'self'"
        assert "object-src 'none'" in parts
        assert "frame-ancestors 'none'" in parts
        assert "img-src 'self' data: https:" in parts
        assert parts[-1] == "report-uri /csp"
        assert len(parts) == 15

    def test_override_replaces_directive(self):
        rendered = ContentPolicyBuilder.build(
            ContentPolicyConfig(directives={"connect-src": ["'self'", "wss://rt.example"]})
        )
        assert "connect-src 'self' wss://rt.example" in clauses(rendered)

    def test_empty_override_omits_directive(self):
        rendered = ContentPolicyBuilder.build(ContentPolicyConfig(directives={"frameSrc": []}))
        assert not any(part.startswith("frame-src") for part in clauses(rendered))

    def test_directive_names_accept_camel_and_snake_case(self):
        assert normalize_directive_name("scriptSrc") == "script-src"
        assert normalize_directive_name("frame_ancestors") == "frame-ancestors"
        assert normalize_directive_name(" default-src ") == "default-src"
        rendered = ContentPolicyBuilder.build(
            ContentPolicyConfig(directives={"scriptSrc": ["'self'", "https://cdn.example"]})
        )
        assert "script-src 'self' https://cdn.example" in clauses(rendered)

    def test_unknown_directive_is_dropped(self):
        with patch.object(csp, "logger") as fake_logger:
            rendered = ContentPolicyBuilder.build(
                ContentPolicyConfig(directives={"evil-src": ["*"]})
            )
        assert "evil-src" not in rendered
        fake_logger.warning.assert_called_once_with("csp_directive_ignored", directive="evil-src")

    def test_boolean_flags(self):
        rendered = ContentPolicyBuilder.build(
            ContentPolicyConfig(upgrade_insecure_requests=True, block_all_mixed_content=True)
        )
        parts = clauses(rendered)
        assert "upgrade-insecure-requests" in parts
        assert "block-all-mixed-content" in parts

    def test_boolean_flag_through_directives(self):
        policy = ContentPolicyBuilder.compile(
            ContentPolicyConfig(directives={"upgradeInsecureRequests": True})
        )
        assert policy.upgrade_insecure_requests is True

    def test_boolean_flag_rejects_other_values(self):
        for value in ("false", ["'self'"], 1):
            with pytest.raises(ConfigurationError) as exc:
                ContentPolicyBuilder.compile(
                    ContentPolicyConfig(directives={"blockAllMixedContent": value})
                )
            assert exc.value.setting == "csp_directives"

    def test_boolean_false_disables_flag(self):
        policy = ContentPolicyBuilder.compile(
            ContentPolicyConfig(
                upgrade_insecure_requests=True,
                directives={"upgrade-insecure-requests": False},
            )
        )
        assert policy.upgrade_insecure_requests is False
        assert "upgrade-insecure-requests" not in clauses(policy.render())

    def test_source_directive_rejects_boolean(self):
        with pytest.raises(ConfigurationError):
            ContentPolicyBuilder.compile(ContentPolicyConfig(directives={"scriptSrc": True}))

    def test_source_injection_rejected(self):
        for source in ("'self'; script-src *", "a, b", "'self'\nX-Evil: 1"):
            with pytest.raises(ConfigurationError) as exc:
                ContentPolicyBuilder.build(ContentPolicyConfig(directives={"img-src": [source]}))
            assert exc.value.setting == "csp_directives"

    def test_unsafe_report_uri_rejected(self):
        for uri in ("javascript:alert(1)", "//evil.example/r", "/csp; script-src *"):
            with pytest.raises(ConfigurationError) as exc:
                ContentPolicyBuilder.build(ContentPolicyConfig(report_uri=uri))
            assert exc.value.setting == "csp_report_uri"


class TestContentPolicy:
    def test_header_name_follows_mode(self):
        enforcing = ContentPolicyBuilder.compile(ContentPolicyConfig())
        report_only = ContentPolicyBuilder.compile(ContentPolicyConfig(report_only=True))
        assert enforcing.header_name == ENFORCING_HEADER
        assert report_only.header()[0] == REPORT_ONLY_HEADER

    def test_nonce_added_to_script_and_style(self):
        policy = ContentPolicyBuilder.compile(ContentPolicyConfig(use_nonce=True))
        parts = clauses(policy.render("abc123"))
        assert "script-src 'self' 'nonce-abc123'" in parts
        assert "style-src 'self' 'nonce-abc123'" in parts
        assert "default-src 'self'" in parts

    def test_nonce_not_added_to_none(self):
        policy = ContentPolicyBuilder.compile(
            ContentPolicyConfig(directives={"script-src": ["'none'"]})
        )
        assert "script-src 'none'" in clauses(policy.render("abc123"))

    def test_generated_nonce(self):
        first, second = generate_nonce(), generate_nonce()
        assert first != second
        assert len(base64.b64decode(first)) == csp.NONCE_BYTES

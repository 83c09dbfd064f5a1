# =============================================================================
# Unit Tests — LLM Provider Abstraction
# =============================================================================
#
# Tests provider-id parsing and the factories. No API calls are made: the
# SDK clients are constructed but never used.
# =============================================================================

from __future__ import annotations

from unittest.mock import patch

import pytest

from app.config import Settings, is_configured_key
from app.services.llm import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    _parse_provider_id,
    create_provider_from_id,
    get_llm_provider,
)


# ---------------------------------------------------------------------------
# Test: Provider ID Parsing
# ---------------------------------------------------------------------------


class TestParseProviderId:
    """Tests for _parse_provider_id() — the pure parsing function."""

    def test_anthropic_simple(self):
        ptype, model, base_url = _parse_provider_id(
            "anthropic/claude-sonnet-4-6",
        )
        assert ptype == "anthropic"
        assert model == "claude-sonnet-4-6"
        assert base_url is None

    def test_perplexity_with_url(self):
        ptype, model, base_url = _parse_provider_id(
            "openai_compatible/sonar@https://api.perplexity.ai",
        )
        assert ptype == "openai_compatible"
        assert model == "sonar"
        assert base_url == "https://api.perplexity.ai"

    def test_gemini_url_keeps_path(self):
        _, model, base_url = _parse_provider_id(
            "openai_compatible/gemini-2.0-flash"
            "@https://generativelanguage.googleapis.com/v1beta/openai/",
        )
        assert model == "gemini-2.0-flash"
        assert base_url.endswith("/v1beta/openai/")

    def test_invalid_no_slash(self):
        with pytest.raises(ValueError, match="Invalid provider_id"):
            _parse_provider_id("no-slash-here")

    def test_unknown_provider_type(self):
        with pytest.raises(ValueError, match="Unknown provider type"):
            _parse_provider_id("gemini/gemini-pro")

    def test_empty_string(self):
        with pytest.raises(ValueError, match="Invalid provider_id"):
            _parse_provider_id("")


# ---------------------------------------------------------------------------
# Test: Factories
# ---------------------------------------------------------------------------


class TestCreateProviderFromId:
    """Tests for create_provider_from_id()."""

    def test_anthropic_without_key_raises(self):
        from app.services import llm

        with patch.object(
            llm.settings, "llm_api_key", None
        ), patch.object(
            llm.settings, "anthropic_api_key", ""
        ), pytest.raises(ValueError, match="API key"):
            create_provider_from_id("anthropic/claude-sonnet-4-6")

    def test_placeholder_key_is_rejected(self):
        from app.services import llm

        with patch.object(
            llm.settings, "llm_api_key", None
        ), pytest.raises(ValueError, match="API key"):
            create_provider_from_id(
                "openai_compatible/sonar@https://api.perplexity.ai",
                api_key="your_perplexity_api_key_here",
            )

    def test_openai_compatible_with_key(self):
        provider = create_provider_from_id(
            "openai_compatible/sonar@https://api.perplexity.ai",
            api_key="pplx-test",
            temperature=0.3,
            max_tokens=1000,
            timeout=30,
            max_retries=3,
        )
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.model == "sonar"

    def test_invalid_format_raises(self):
        with pytest.raises(ValueError):
            create_provider_from_id("bad-format")


class TestGetLLMProvider:
    """get_llm_provider() builds a fresh provider from the given settings."""

    def test_gemini_is_default(self):
        cfg = Settings(google_api_key="g-test", llm_api_key=None, _env_file=None)
        provider = get_llm_provider(cfg)
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.model == "gemini-2.0-flash"

    def test_anthropic_selected(self):
        cfg = Settings(
            llm_provider="anthropic",
            llm_model="claude-sonnet-4-6",
            anthropic_api_key="sk-ant-test",
            llm_api_key=None,
            _env_file=None,
        )
        provider = get_llm_provider(cfg)
        assert isinstance(provider, AnthropicProvider)
        assert provider.model == "claude-sonnet-4-6"

    def test_not_a_singleton(self):
        cfg = Settings(google_api_key="g-test", llm_api_key=None, _env_file=None)
        assert get_llm_provider(cfg) is not get_llm_provider(cfg)


class TestIsConfiguredKey:
    def test_empty(self):
        assert not is_configured_key("")
        assert not is_configured_key(None)

    def test_placeholder(self):
        assert not is_configured_key("your_google_api_key_here")

    def test_real_value(self):
        assert is_configured_key("AIza-something")

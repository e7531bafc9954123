from __future__ import annotations

import pytest

from stream_gateway.config.loader import GatewaySettings
from stream_gateway.core.contracts import ProviderCustomHeader, ProviderDescriptor
from stream_gateway.core.errors import ConfigurationError
from stream_gateway.llm.resolver import CompatibilityMode, resolve, select_mode


def test_select_mode_by_provider_name() -> None:
    assert select_mode(ProviderDescriptor(name="openai")) is CompatibilityMode.OPENAI
    assert select_mode(ProviderDescriptor(name="Gemini")) is CompatibilityMode.GEMINI
    assert select_mode(ProviderDescriptor(name="openrouter")) is CompatibilityMode.OPENROUTER
    assert select_mode(ProviderDescriptor(name="ollama")) is CompatibilityMode.SELF_HOSTED
    assert select_mode(ProviderDescriptor(name="acme")) is CompatibilityMode.OPENAI


def test_explicit_compatibility_mode_wins_over_name() -> None:
    p = ProviderDescriptor(name="acme", compatibility_mode="self_hosted", base_url="http://h:8080")
    assert select_mode(p) is CompatibilityMode.SELF_HOSTED


def test_unknown_explicit_mode_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        select_mode(ProviderDescriptor(name="acme", compatibility_mode="bogus"))


def test_missing_api_key_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as ei:
        resolve("gpt-4o", ProviderDescriptor(name="openai"))
    assert ei.value.details["provider"] == "openai"


def test_openai_target_has_bearer_auth_and_default_url() -> None:
    t = resolve("gpt-4o", ProviderDescriptor(name="openai", api_key="sk-test"))
    assert t.url == "https://api.openai.com/v1/chat/completions"
    assert t.headers["Authorization"] == "Bearer sk-test"
    assert t.param_flavor == "openai"
    assert t.patch_tool_call_index is False
    assert "sk-test" not in repr(t)


def test_gemini_target_is_tagged_for_stream_repair() -> None:
    t = resolve("gemini-2.0-flash", ProviderDescriptor(name="gemini", api_key="k"))
    assert t.compatibility_mode is CompatibilityMode.GEMINI
    assert t.param_flavor == "gemini"
    assert t.patch_tool_call_index is True


def test_stream_repair_membership_is_configurable() -> None:
    settings = GatewaySettings(stream_repair_providers=["OpenAI"])
    t = resolve("gpt-4o", ProviderDescriptor(name="openai", api_key="k"), settings=settings)
    assert t.patch_tool_call_index is True


def test_self_hosted_appends_v1_and_needs_no_key() -> None:
    t = resolve("llama3", ProviderDescriptor(name="ollama", base_url="http://localhost:11434/"))
    assert t.base_url == "http://localhost:11434/v1"
    assert t.url == "http://localhost:11434/v1/chat/completions"
    assert t.has_auth_header is False

    kept = resolve("llama3", ProviderDescriptor(name="ollama", base_url="http://localhost:11434/v1"))
    assert kept.base_url == "http://localhost:11434/v1"


def test_self_hosted_without_base_url_falls_back_to_local_proxy() -> None:
    settings = GatewaySettings(local_proxy_url="http://127.0.0.1:9999")
    t = resolve("llama3", ProviderDescriptor(name="local"), settings=settings)
    assert t.base_url == "http://127.0.0.1:9999/v1"


def test_self_hosted_without_any_base_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        resolve("llama3", ProviderDescriptor(name="local"), settings=GatewaySettings(local_proxy_url=""))


def test_openrouter_adds_identification_headers() -> None:
    settings = GatewaySettings(app_referer="https://example.test", app_title="demo")
    t = resolve("meta/llama", ProviderDescriptor(name="openrouter", api_key="k"), settings=settings)
    assert t.headers["HTTP-Referer"] == "https://example.test"
    assert t.headers["X-Title"] == "demo"

    plain = resolve("gpt-4o", ProviderDescriptor(name="openai", api_key="k"), settings=settings)
    assert "X-Title" not in plain.headers


def test_custom_headers_cannot_override_authorization() -> None:
    p = ProviderDescriptor(
        name="openai",
        api_key="real",
        custom_headers=[
            ProviderCustomHeader(header="authorization", value="Bearer fake"),
            ProviderCustomHeader(header="X-Org", value="team-a"),
        ],
    )
    t = resolve("gpt-4o", p)
    assert t.headers["Authorization"] == "Bearer real"
    assert t.headers["X-Org"] == "team-a"
    assert "authorization" not in t.headers

import json

from ella.errors import ProviderError, describe_error, failure_notice
from ella.prompts import (
    GENERIC_FAILURE_NOTICE,
    PREVIOUS_MESSAGES_TOKEN,
    QUOTA_NOTICE,
    SEARCH_DETAILS_TOKEN,
    build_title_prompt,
    build_web_prompt,
    fill_placeholder,
    strip_code_fences,
)
from ella.tools import identify_tool
from tests.fakes import http_error


def test_identify_tool_web_prefix():
    directive = identify_tool("/web best hiking trails near Seattle")
    assert directive.tool == "web"
    assert directive.message == "best hiking trails near Seattle"


def test_identify_tool_image_prefix_with_padding():
    directive = identify_tool("/image   a red fox  ")
    assert directive.tool == "image"
    assert directive.message == "a red fox"


def test_identify_tool_bare_image_prefix_has_empty_message():
    directive = identify_tool("/image")
    assert directive.tool == "image"
    assert directive.message == ""


def test_identify_tool_defaults_to_text_unchanged():
    directive = identify_tool("hello /web there")
    assert directive.tool == "text"
    assert directive.message == "hello /web there"


def test_identify_tool_prefix_is_case_sensitive():
    assert identify_tool("/WEB news").tool == "text"


def test_fill_placeholder_only_replaces_first_occurrence():
    template = f"a {SEARCH_DETAILS_TOKEN} b {SEARCH_DETAILS_TOKEN}"
    assert fill_placeholder(template, SEARCH_DETAILS_TOKEN, "X") == f"a X b {SEARCH_DETAILS_TOKEN}"


def test_build_web_prompt_fills_every_token():
    contents = ["Trail one is 4 miles.", "Trail two is steep."]
    previous = [{"sender": "user", "text": "hi"}]

    prompt = build_web_prompt(contents, "Try trail one.", previous)

    assert json.dumps(contents) in prompt
    assert "Try trail one." in prompt
    assert json.dumps(previous) in prompt
    assert "{{" not in prompt


def test_build_web_prompt_is_deterministic_and_blank_answer():
    first = build_web_prompt(["a"], None, [])
    second = build_web_prompt(["a"], None, [])

    assert first == second
    assert "**Simplified Answer:** \n" in first
    assert PREVIOUS_MESSAGES_TOKEN not in first


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_build_title_prompt_embeds_messages():
    prompt = build_title_prompt([{"sender": "user", "text": "Trails in Seattle?"}])
    assert '"text": "Trails in Seattle?"' in prompt
    assert prompt.endswith("Generate only the title, nothing else:")


def test_failure_notice_detects_quota():
    quota = http_error(429, {"error": {"code": 429, "message": "Resource exhausted"}})
    assert failure_notice(quota) == QUOTA_NOTICE
    assert failure_notice(ProviderError("You exceeded your current quota")) == QUOTA_NOTICE
    assert failure_notice(RuntimeError("boom")) == GENERIC_FAILURE_NOTICE


def test_describe_error_uses_embedded_message():
    error = http_error(400, {"error": {"code": 400, "message": "API key not valid."}})
    assert describe_error(error) == "API key not valid."
    assert describe_error(RuntimeError("raw internals")) == GENERIC_FAILURE_NOTICE

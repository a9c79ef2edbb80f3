import asyncio
from types import SimpleNamespace

import pytest

from medhira.config import settings
from medhira.core.exceptions import EmptyTranscriptError, MalformedProviderOutput
from medhira.services.llm_service import (
    FALLBACK_SUMMARY,
    CannedSummarizationProvider,
    OpenAISummarizationProvider,
    extract_json_object,
    parse_summary_response,
)


class _FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(content):
    completions = _FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_extract_json_object_ignores_braces_inside_strings():
    text = 'Sure! Here it is: {"symptoms": "rash shaped like }{", "age": "30"} Hope that helps.'
    assert extract_json_object(text) == '{"symptoms": "rash shaped like }{", "age": "30"}'


def test_extract_json_object_handles_nesting_and_missing_objects():
    assert extract_json_object('x {"a": {"b": 1}} y {"c": 2}') == '{"a": {"b": 1}}'
    assert extract_json_object("no json here") is None
    assert extract_json_object('{"unterminated": ') is None


def test_parse_summary_response_strict_json():
    summary = parse_summary_response('{"patientName": "Jane Doe", "age": 34, "diagnosis": "Flu"}')
    assert summary.patient_name == "Jane Doe"
    assert summary.age == "34"
    assert summary.diagnosis == "Flu"
    assert summary.history is None


def test_parse_summary_response_extracts_json_from_prose():
    text = 'Here is the summary:\n```json\n{"patientName": "Ali", "followUp": "1 week"}\n```'
    summary = parse_summary_response(text)
    assert summary.patient_name == "Ali"
    assert summary.follow_up == "1 week"


@pytest.mark.parametrize("text", ["I could not find anything.", "[1, 2, 3]", '{"symptoms": {"onset": "monday"}}'])
def test_parse_summary_response_rejects_unusable_output(text):
    with pytest.raises(MalformedProviderOutput):
        parse_summary_response(text)


def test_openai_provider_parses_completion():
    client, completions = _fake_client('{"patientName": "Maria", "diagnosis": "Migraine"}')
    provider = OpenAISummarizationProvider(settings, client=client)

    summary = asyncio.run(provider.summarize("  DOCTOR: hello  "))

    assert summary.patient_name == "Maria"
    assert summary.diagnosis == "Migraine"
    call = completions.calls[0]
    assert call["model"] == settings.llm_model
    assert "DOCTOR: hello" in call["messages"][1]["content"]


def test_openai_provider_rejects_blank_transcript_without_calling_api():
    client, completions = _fake_client("{}")
    provider = OpenAISummarizationProvider(settings, client=client)

    with pytest.raises(EmptyTranscriptError):
        asyncio.run(provider.summarize("   "))
    assert completions.calls == []


def test_canned_provider_returns_independent_copy():
    provider = CannedSummarizationProvider(delay_seconds=0)

    summary = asyncio.run(provider.summarize("DOCTOR: hi"))
    summary.patient_name = "Changed"

    assert FALLBACK_SUMMARY.patient_name == "John Smith"
    with pytest.raises(EmptyTranscriptError):
        asyncio.run(provider.summarize(""))


def test_parse_summary_response_joins_list_values():
    summary = parse_summary_response('{"patientName": "Ann", "symptoms": ["cough", " fever ", ""], "prescription": []}')

    assert summary.symptoms == "cough, fever"
    assert summary.prescription == ""
    assert summary.backfilled().prescription == "Not specified"

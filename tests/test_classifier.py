import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from drasil.detection.classifier import OpenAIProfileClassifier, build_prompt, parse_verdict
from drasil.detection.models import ClassifierRequest
from drasil.errors import ExternalServiceError


def make_request(**overrides):
    fields = dict(
        user_id="user-1",
        username="giveaway",
        account_age_days=2,
        server_join_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
        message_history_sample=[f"message {i}" for i in range(15)],
        discriminator="1234",
    )
    fields.update(overrides)
    return ClassifierRequest(**fields)


class FakeCompletions:
    def __init__(self, content="OK", *, error=None, delay=0.0, choices=True):
        self.content = content
        self.error = error
        self.delay = delay
        self.choices = choices
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        choices = [SimpleNamespace(message=SimpleNamespace(content=self.content))] if self.choices else []
        return SimpleNamespace(choices=choices, usage=None)


def classifier_with(completions, timeout=1.0):
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIProfileClassifier("sk-test", timeout_seconds=timeout, client=client)


def test_prompt_includes_profile_and_recent_sample():
    prompt = build_prompt(make_request())

    assert "Username: giveaway#1234" in prompt
    assert "Account age: 2 days" in prompt
    assert "Joined server: 2024-05-01" in prompt
    assert '"message 5"' in prompt
    assert '"message 4"' not in prompt
    assert "Here are some examples:" in prompt


def test_prompt_hides_zero_discriminator_and_unknown_age():
    prompt = build_prompt(make_request(discriminator="0", account_age_days=None, message_history_sample=[]))
    assert "Username: giveaway\n" in prompt
    assert "Account age: unknown" in prompt
    assert "Recent messages" not in prompt


@pytest.mark.parametrize(
    "raw,label",
    [("SUSPICIOUS", "SUSPICIOUS"), ("suspicious.", "SUSPICIOUS"), ("OK", "OK"), ("", "OK"), (None, "OK")],
)
def test_parse_verdict(raw, label):
    assert parse_verdict(raw).result == label


async def test_classify_returns_verdict():
    completions = FakeCompletions("SUSPICIOUS")
    verdict = await classifier_with(completions).classify(make_request())

    assert verdict.result == "SUSPICIOUS"
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["messages"][0]["role"] == "system"


async def test_api_error_becomes_external_service_error():
    with pytest.raises(ExternalServiceError):
        await classifier_with(FakeCompletions(error=OpenAIError("boom"))).classify(make_request())


async def test_timeout_becomes_external_service_error():
    with pytest.raises(ExternalServiceError, match="timed out"):
        await classifier_with(FakeCompletions(delay=1.0), timeout=0.01).classify(make_request())


async def test_empty_choices_is_an_error():
    with pytest.raises(ExternalServiceError):
        await classifier_with(FakeCompletions(choices=False)).classify(make_request())

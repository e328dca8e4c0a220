from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from ..constants import CLASSIFIER_HISTORY_SAMPLE
from ..errors import ExternalServiceError
from .models import ClassifierRequest, ClassifierVerdict

log = logging.getLogger("drasil.classifier")

SYSTEM_PROMPT = (
    "You are a Discord moderation assistant. Based on the user's profile, classify whether the user "
    "is suspicious. If suspicious, respond 'SUSPICIOUS'; if normal, respond 'OK'. Consider account age, "
    "username characteristics, nickname if available, how recently they joined, and the content of "
    "their recent messages if provided."
)


@dataclass(frozen=True)
class FewShotExample:
    username: str
    account_age: str
    joined: str
    message: str
    label: str


FEW_SHOT_EXAMPLES: tuple[FewShotExample, ...] = (
    FewShotExample("Free_Nitro_Giveaway#0001", "1 days", "30 minutes ago",
                   "Click here for FREE DISCORD NITRO: bit.ly/free-nitro-discord", "SUSPICIOUS"),
    FewShotExample("Steam_Games_Free#9999", "3 days", "5 minutes ago",
                   "Check my profile for free Steam games! Limited time offer!", "SUSPICIOUS"),
    FewShotExample("crypto_support_desk", "2 days", "1 hours ago",
                   "DM me to recover your wallet, our admins verified me", "SUSPICIOUS"),
    FewShotExample("maplewood", "1450 days", "210 days ago",
                   "anyone up for a match later tonight?", "OK"),
    FewShotExample("kestrel_dev", "900 days", "2 days ago",
                   "thanks for the invite, the build guide in #resources helped a lot", "OK"),
)


def format_examples(examples: tuple[FewShotExample, ...] = FEW_SHOT_EXAMPLES) -> str:
    lines = ["", "", "Here are some examples:"]
    for ex in examples:
        lines.append(
            f'Username: {ex.username}\nAccount age: {ex.account_age}\nJoined server: {ex.joined}\n'
            f'Recent message: "{ex.message}"\nClassification: {ex.label}\n'
        )
    return "\n".join(lines)


def build_prompt(request: ClassifierRequest) -> str:
    username = request.username
    if request.discriminator and request.discriminator != "0":
        username = f"{username}#{request.discriminator}"

    parts = ["Please analyze this Discord user profile:", f"Username: {username}"]
    if request.nickname:
        parts.append(f"Nickname: {request.nickname}")
    parts.append(
        f"Account age: {request.account_age_days} days" if request.account_age_days is not None
        else "Account age: unknown"
    )
    parts.append(
        f"Joined server: {request.server_join_date.date().isoformat()}" if request.server_join_date
        else "Joined server: unknown"
    )
    sample = request.message_history_sample[-CLASSIFIER_HISTORY_SAMPLE:]
    if sample:
        parts.append('Recent messages: "' + '", "'.join(sample) + '"')

    prompt = "\n".join(parts)
    prompt += format_examples()
    prompt += "\n\nBased on these details and examples, classify the user above as either 'OK' or 'SUSPICIOUS'."
    return prompt


def parse_verdict(raw: Optional[str]) -> ClassifierVerdict:
    text = (raw or "").strip()
    if "SUSPICIOUS" in text.upper():
        return ClassifierVerdict("SUSPICIOUS", ["classifier flagged profile as suspicious"])
    return ClassifierVerdict("OK", ["classifier found profile normal"])


class OpenAIProfileClassifier:
    """ProfileRiskClassifier backed by a chat completion model."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 10.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key)
        self._model = model
        self._timeout = timeout_seconds

    async def classify(self, request: ClassifierRequest) -> ClassifierVerdict:
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": build_prompt(request)},
                    ],
                    temperature=0.3,
                    max_tokens=50,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"classifier timed out after {self._timeout}s") from e
        except OpenAIError as e:
            raise ExternalServiceError(f"classifier request failed: {e}") from e

        if not response.choices:
            raise ExternalServiceError("classifier returned no choices")

        verdict = parse_verdict(response.choices[0].message.content)
        if response.usage:
            log.debug(
                "Classifier tokens prompt=%s completion=%s", response.usage.prompt_tokens, response.usage.completion_tokens
            )
        return verdict

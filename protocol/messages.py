"""
Request messages exchanged between the producer and the consumer.

A request travels as a UTF-8 JSON object with the keys ``action``,
``msisdn``, ``number`` and ``timestamp``.
"""

import json
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
MSISDN_DIGITS = 9
CONTENT_TYPE = "application/json"
FIELDS = ("action", "msisdn", "number", "timestamp")


class MalformedPayloadError(ValueError):
    pass


class Action(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    STATE = "state"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def random_msisdn(rng: random.Random) -> str:
    return str(rng.randrange(10 ** MSISDN_DIGITS)).zfill(MSISDN_DIGITS)


@dataclass(frozen=True)
class SubscriptionRequest:
    action: Action
    msisdn: str
    number: int
    timestamp: str

    @classmethod
    def generate(
        cls,
        number: int,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "SubscriptionRequest":
        """Build a request with a random action and MSISDN for sequence ``number``."""
        rng = rng or random.Random()
        return cls(
            action=rng.choice(list(Action)),
            msisdn=random_msisdn(rng),
            number=number,
            timestamp=format_timestamp(clock()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "msisdn": self.msisdn,
            "number": self.number,
            "timestamp": self.timestamp,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> "SubscriptionRequest":
        fields = decode_fields(body)
        missing = [name for name in FIELDS if name not in fields]
        if missing:
            raise MalformedPayloadError(f"Request is missing fields: {', '.join(missing)}")
        try:
            action = Action(fields["action"])
        except ValueError:
            raise MalformedPayloadError(f"Unknown action {fields['action']!r}") from None
        try:
            number = int(fields["number"])
        except (TypeError, ValueError):
            raise MalformedPayloadError(f"Bad sequence number {fields['number']!r}") from None
        return cls(
            action=action,
            msisdn=str(fields["msisdn"]),
            number=number,
            timestamp=str(fields["timestamp"]),
        )


def decode_fields(body: bytes) -> Dict[str, Any]:
    """
    Decode a request body into a dict without checking its fields.

    Raises MalformedPayloadError when the body is not a UTF-8 JSON object.
    """
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError(f"Body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"Expected a JSON object, got {type(data).__name__}")
    return data

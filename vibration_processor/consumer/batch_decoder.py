"""
Batch Decoder
Validates raw multi-axis vibration messages and derives record ids
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..exceptions import DecodeError
from ..models import AXES, AXIS_FIELDS, ConsumedMessage, RawVibrationBatch

logger = logging.getLogger(__name__)

RETRY_ENVELOPE_KEY = "original_message"
RETRY_METADATA_KEY = "retry"

_HEX_CODE = re.compile(r"^0x[0-9a-fA-F]{1,8}$")


class StatusSeverity(Enum):
    """OPC UA status code severity"""

    GOOD = "good"
    UNCERTAIN = "uncertain"
    BAD = "bad"


def status_severity(status_code: str) -> StatusSeverity:
    """
    Classify an OPC UA status code

    Accepts symbolic names (``Good``, ``GoodClamped``, ``BadSensorFailure``)
    or numeric codes (``0x80000000``, ``2147483648``) whose top two bits
    carry the severity.

    Raises:
        DecodeError: If the code is not recognised
    """
    if not isinstance(status_code, str) or not status_code.strip():
        raise DecodeError(f"Unknown status code: {status_code!r}", field="StatusCode")

    code = status_code.strip()
    lowered = code.lower()
    for severity in (StatusSeverity.UNCERTAIN, StatusSeverity.GOOD, StatusSeverity.BAD):
        if lowered.startswith(severity.value):
            return severity

    numeric: Optional[int] = None
    if _HEX_CODE.match(code):
        numeric = int(code, 16)
    elif code.isdigit():
        numeric = int(code)

    if numeric is None or numeric > 0xFFFFFFFF:
        raise DecodeError(f"Unknown status code: {status_code!r}", field="StatusCode")

    top_bits = numeric >> 30
    if top_bits == 0:
        return StatusSeverity.GOOD
    if top_bits == 1:
        return StatusSeverity.UNCERTAIN
    return StatusSeverity.BAD


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime"""
    if not isinstance(value, str) or not value:
        raise DecodeError(f"Missing or non-string {field_name}", field=field_name)

    try:
        timestamp = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise DecodeError(f"Unparseable {field_name}: {value!r}", field=field_name)

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def derive_record_id(source_id: str, source_timestamp: datetime) -> str:
    """Stable idempotency key: ``<source_id>:<UTC ISO-8601 source timestamp>``"""
    return f"{source_id}:{source_timestamp.astimezone(timezone.utc).isoformat()}"


def position_id(consumed: ConsumedMessage) -> str:
    """Fallback record id for messages too broken to identify"""
    return f"{consumed.topic}-{consumed.partition}-{consumed.offset}"


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _count_or_zero(value: Any) -> int:
    """Retry metadata is advisory; a garbled count reads as zero"""
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class Envelope:
    """A consumed payload, unwrapped from its retry envelope if it has one"""

    message: Any
    record_id: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    source_key: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return self.record_id is not None


class BatchDecoder:
    """Parses raw batch messages into RawVibrationBatch"""

    def __init__(self, config: Dict):
        """
        Initialize decoder

        Args:
            config: Configuration dictionary
        """
        proc_config = config.get("processing", {})
        self.default_source_id = proc_config.get("default_source_id", "unknown")

    def load(self, value: Any) -> Dict:
        """
        Turn a wire value (bytes, str or mapping) into a message dict

        Raises:
            DecodeError: If the value is not a JSON object
        """
        if isinstance(value, (bytes, bytearray)):
            try:
                value = value.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"Message is not valid UTF-8: {e}")

        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise DecodeError(f"JSON decode error: {e}")

        if not isinstance(value, dict):
            raise DecodeError(f"Message must be a JSON object, got {type(value).__name__}")

        return value

    def unwrap(self, value: Any) -> Envelope:
        """
        Separate retry metadata from the original message

        Never raises: an unparseable value is kept as-is so that it can be
        retried and dead-lettered with its original bytes.
        """
        try:
            data = self.load(value)
        except DecodeError:
            if isinstance(value, (bytes, bytearray)):
                value = value.decode("utf-8", errors="replace")
            return Envelope(message=value)

        if RETRY_ENVELOPE_KEY in data and isinstance(data.get(RETRY_METADATA_KEY), dict):
            meta = data[RETRY_METADATA_KEY]
            return Envelope(
                message=data[RETRY_ENVELOPE_KEY],
                record_id=_text_or_none(meta.get("record_id")),
                retry_count=_count_or_zero(meta.get("retry_count")),
                last_error=_text_or_none(meta.get("last_error")),
                source_key=_text_or_none(meta.get("source_key")),
            )

        return Envelope(message=data)

    def resolve_source_id(self, message: Dict, key: Optional[str] = None) -> str:
        for field_name in ("SourceId", "MachineId"):
            value = message.get(field_name)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return str(value)
        if key:
            return key
        return self.default_source_id

    def record_id_for(self, envelope: Envelope, consumed: ConsumedMessage) -> str:
        """
        Derive the idempotency key for a consumed message

        Retries reuse the id carried in their envelope. First attempts use
        source id plus SourceTimestamp, or the input position when the
        message is too broken to read a timestamp from.
        """
        if envelope.record_id:
            return envelope.record_id

        try:
            message = self.load(envelope.message)
            source_timestamp = parse_timestamp(
                message.get("SourceTimestamp"), "SourceTimestamp"
            )
        except DecodeError:
            return position_id(consumed)

        source_id = self.resolve_source_id(message, consumed.key)
        return derive_record_id(source_id, source_timestamp)

    def decode(self, value: Any, key: Optional[str] = None) -> RawVibrationBatch:
        """
        Decode and validate a raw batch message

        Args:
            value: Message as bytes, JSON string or mapping
            key: Partition key, used as source id fallback

        Returns:
            RawVibrationBatch

        Raises:
            DecodeError: Missing field, mismatched axis lengths, unparseable
                timestamp or unknown status code
        """
        message = self.load(value)

        axes = {axis: self._parse_axis(message, AXIS_FIELDS[axis]) for axis in AXES}
        lengths = {axis: len(values) for axis, values in axes.items()}
        if len(set(lengths.values())) != 1:
            raise DecodeError(f"Axis length mismatch: {lengths}")

        server_timestamp = parse_timestamp(message.get("ServerTimestamp"), "ServerTimestamp")
        source_timestamp = parse_timestamp(message.get("SourceTimestamp"), "SourceTimestamp")

        if "StatusCode" not in message:
            raise DecodeError("Missing field: StatusCode", field="StatusCode")
        status_code = message["StatusCode"]
        if isinstance(status_code, int) and not isinstance(status_code, bool):
            status_code = str(status_code)
        status_severity(status_code)

        return RawVibrationBatch(
            x=axes["x"],
            y=axes["y"],
            z=axes["z"],
            server_timestamp=server_timestamp,
            source_timestamp=source_timestamp,
            status_code=status_code,
            source_id=self.resolve_source_id(message, key),
        )

    def _parse_axis(self, message: Dict, field_name: str) -> Tuple[float, ...]:
        if field_name not in message:
            raise DecodeError(f"Missing field: {field_name}", field=field_name)

        values = message[field_name]
        if not isinstance(values, (list, tuple)):
            raise DecodeError(f"{field_name} must be a sequence", field=field_name)

        parsed = []
        for index, value in enumerate(values):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise DecodeError(
                    f"{field_name}[{index}] is not a number: {value!r}", field=field_name
                )
            if not math.isfinite(value):
                raise DecodeError(
                    f"{field_name}[{index}] is not finite: {value!r}", field=field_name
                )
            parsed.append(float(value))

        return tuple(parsed)

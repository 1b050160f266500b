"""
Streaming reader for batch extraction results.

The extraction service returns one JSON object per line:

    {"key": "invoice-0042", "response": {"text": "{\"invoiceCode\": ...}"}}

The invoice itself is the model's free-text answer, i.e. a JSON document
encoded *inside* a JSON string, so every line is decoded twice. The payload
text is accepted from the shapes the common batch APIs produce:

    response.text
    response.candidates[0].content.parts[*].text       (Gemini batch)
    response.body.choices[0].message.content           (OpenAI batch)
    text                                               (flat)

Lines are read one at a time; a bad line is logged and skipped, never
fatal to the rest of the file.
"""
import io
import json
import logging
import re
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, TextIO, Union

from pydantic import ValidationError

from models.extraction import ExtractedInvoiceRecord, ParsedRecord
from models.result import ParseFailure
from .errors import ParseError, SystemicError

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500

Source = Union[str, Path, TextIO, io.BufferedIOBase]


def _loads(text: str):
    return json.loads(text, parse_float=Decimal)


def _first_dict(value) -> dict:
    """First element of a non-empty list when it is an object, else {}."""
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _payload_text(outer: dict) -> str:
    """Locate the model's text answer inside one result line."""
    if outer.get("error"):
        raise ParseError(f"extraction request failed: {outer['error']}")

    response = outer.get("response")
    if isinstance(response, dict):
        if isinstance(response.get("text"), str):
            return response["text"]

        parts = _dict(_first_dict(response.get("candidates")).get("content")).get("parts")
        if isinstance(parts, list):
            texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
            if texts:
                return "".join(texts)

        choices = _dict(response.get("body")).get("choices")
        content = _dict(_first_dict(choices).get("message")).get("content")
        if isinstance(content, str):
            return content
    elif isinstance(response, str):
        return response

    if isinstance(outer.get("text"), str):
        return outer["text"]
    raise ParseError("no text payload in result line")


def decode_invoice_payload(text: str) -> ExtractedInvoiceRecord:
    """
    Decode the model's answer into an invoice record.

    Handles markdown code fences and attempts basic JSON repair, then
    validates against ExtractedInvoiceRecord. Raises ParseError.
    """
    # Strip code fences if present
    raw = re.sub(r"^\s*```(?:json)?\s*", "", text, flags=re.IGNORECASE)
    raw = re.sub(r"\s*```\s*$", "", raw)
    raw = raw.strip()

    # Find outermost JSON object
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0:
        raise ParseError("no JSON object in payload")

    json_str = raw[start:end]
    try:
        data = _loads(json_str)
    except RecursionError as e:
        raise ParseError("payload is nested too deeply") from e
    except json.JSONDecodeError as e:
        # Attempt repair: remove trailing commas before } or ]
        repaired = re.sub(r",\s*([}\]])", r"\1", json_str)
        try:
            data = _loads(repaired)
        except RecursionError as e2:
            raise ParseError("payload is nested too deeply") from e2
        except json.JSONDecodeError:
            raise ParseError(f"payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("payload is not a JSON object")
    try:
        return ExtractedInvoiceRecord.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]
        )
        raise ParseError(f"payload does not match invoice schema: {errors}") from e


def decode_line(line: str) -> ParsedRecord:
    """Decode one non-blank result line (without its line number). Raises ParseError."""
    try:
        outer = _loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"line is not valid JSON: {e}") from e
    except RecursionError as e:
        raise ParseError("line is nested too deeply") from e
    if not isinstance(outer, dict):
        raise ParseError("line is not a JSON object")

    key = outer.get("key") or outer.get("custom_id")
    invoice = decode_invoice_payload(_payload_text(outer))
    return ParsedRecord(line_number=0, key=str(key) if key is not None else None, invoice=invoice)


class StreamingBatchParser:
    """
    Lazily parse a line-delimited result source.

    ``records()`` yields each successfully decoded line exactly once; it
    cannot be restarted. Failures accumulate in ``failures`` as the stream
    is consumed.

    Args:
        source: A path, or an already-open text or binary file object. Paths
                are opened (and closed) by the parser; file objects are not
                closed.
    """

    def __init__(self, source: Source):
        self.source = source
        self.failures: list[ParseFailure] = []
        self.lines_read = 0
        self.records_parsed = 0
        self._consumed = False

    @property
    def source_name(self) -> str:
        if isinstance(self.source, (str, Path)):
            return str(self.source)
        return getattr(self.source, "name", None) or "<stream>"

    def records(self) -> Iterator[ParsedRecord]:
        if self._consumed:
            raise RuntimeError("StreamingBatchParser.records() can only be consumed once")
        self._consumed = True
        return self._iterate()

    def __iter__(self) -> Iterator[ParsedRecord]:
        return self.records()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _iterate(self) -> Iterator[ParsedRecord]:
        if isinstance(self.source, (str, Path)):
            try:
                # Binary, so one undecodable line stays a per-line failure
                handle = open(self.source, "rb")
            except OSError as e:
                raise SystemicError(f"Cannot open batch source {self.source}: {e}") from e
            with handle:
                yield from self._read(handle)
        else:
            yield from self._read(self.source)

        logger.info(
            "Parsed %s: %d records, %d failures (%d lines)",
            self.source_name, self.records_parsed, len(self.failures), self.lines_read,
        )

    def _read(self, handle) -> Iterator[ParsedRecord]:
        line_number = 0
        while True:
            try:
                raw = handle.readline()
            except (OSError, UnicodeDecodeError) as e:
                raise SystemicError(
                    f"Cannot read batch source {self.source_name} after line {line_number}: {e}"
                ) from e
            if not raw:
                break
            line_number += 1
            self.lines_read = line_number

            if isinstance(raw, bytes):
                try:
                    raw = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    self._fail(line_number, f"line is not valid UTF-8: {e}", repr(raw[:PREVIEW_CHARS]))
                    continue

            line = raw.rstrip("\r\n")
            if not line.strip():
                continue

            try:
                record = decode_line(line)
            except ParseError as e:
                self._fail(line_number, e.reason, line[:PREVIEW_CHARS])
                continue

            record.line_number = line_number
            self.records_parsed += 1
            yield record

    def _fail(self, line_number: int, reason: str, preview: Optional[str]) -> None:
        logger.warning("Skipping line %d of %s: %s", line_number, self.source_name, reason)
        self.failures.append(ParseFailure(line_number=line_number, reason=reason, preview=preview))


def iter_batch_records(
    source: Source,
    on_record: Callable[[ParsedRecord], None],
    on_failure: Optional[Callable[[ParseFailure], None]] = None,
) -> list[ParseFailure]:
    """
    Callback form of StreamingBatchParser. Calls *on_record* for every
    decoded record (and *on_failure* for every bad line) in file order.
    Returns the failure log.
    """
    parser = StreamingBatchParser(source)
    reported = 0
    for record in parser.records():
        if on_failure:
            for failure in parser.failures[reported:]:
                on_failure(failure)
            reported = len(parser.failures)
        on_record(record)
    if on_failure:
        for failure in parser.failures[reported:]:
            on_failure(failure)
    return parser.failures

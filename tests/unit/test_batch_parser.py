"""
Unit tests for the streaming batch result parser.
"""
import io
import json
from decimal import Decimal

import pytest

from pipeline.batch_parser import (
    StreamingBatchParser,
    decode_invoice_payload,
    decode_line,
    iter_batch_records,
)
from pipeline.errors import ParseError, SystemicError


@pytest.mark.unit
class TestDecodePayload:
    """Tests for decoding the inner invoice payload."""

    def test_decimals_are_exact(self, sample_invoice):
        """Test that numbers are parsed as Decimal, never float."""
        record = decode_invoice_payload(json.dumps(sample_invoice))
        item = record.items[0]
        assert isinstance(item.unit_price, Decimal)
        assert item.unit_price == Decimal("3.535")
        assert record.total_amount == Decimal("35.35")

    def test_camel_and_snake_case_keys(self, sample_invoice):
        """Test that aliases resolve to the same fields."""
        record = decode_invoice_payload(json.dumps(sample_invoice))
        assert record.invoice_code == "FAC-2024-001"
        assert record.provider.tax_id == "B-12345678"
        assert record.items[0].material_name == "Cemento Portland 25kg"
        assert record.items[0].code == "CEM-001"

    def test_code_fences_and_trailing_commas(self, sample_invoice):
        """Test markdown fences and trailing commas are tolerated."""
        body = json.dumps(sample_invoice)
        text = "```json\n" + body[:-1] + ",}\n```"
        record = decode_invoice_payload(text)
        assert record.invoice_code == "FAC-2024-001"

    def test_missing_items_rejected(self, sample_invoice):
        """Test that an invoice without items is a parse error."""
        sample_invoice["items"] = []
        with pytest.raises(ParseError):
            decode_invoice_payload(json.dumps(sample_invoice))

    def test_not_json(self):
        """Test plain prose is a parse error."""
        with pytest.raises(ParseError):
            decode_invoice_payload("I could not read this invoice.")


@pytest.mark.unit
class TestDecodeLine:
    """Tests for decoding an outer result line."""

    def test_gemini_candidates_shape(self, sample_invoice):
        """Test the payload is found inside candidate parts."""
        line = json.dumps({
            "key": "inv-7",
            "response": {"candidates": [{"content": {"parts": [{"text": json.dumps(sample_invoice)}]}}]},
        })
        record = decode_line(line)
        assert record.key == "inv-7"
        assert record.invoice.invoice_code == "FAC-2024-001"

    def test_openai_body_shape(self, sample_invoice):
        """Test the payload is found inside body.choices."""
        line = json.dumps({
            "custom_id": "req-9",
            "response": {"body": {"choices": [{"message": {"content": json.dumps(sample_invoice)}}]}},
        })
        record = decode_line(line)
        assert record.key == "req-9"

    def test_error_line(self):
        """Test a line reporting a failed request is a parse error."""
        with pytest.raises(ParseError, match="extraction request failed"):
            decode_line(json.dumps({"key": "x", "error": {"code": 500}}))

    def test_no_payload(self):
        """Test a line without any text payload is a parse error."""
        with pytest.raises(ParseError):
            decode_line(json.dumps({"key": "x", "response": {}}))


@pytest.mark.unit
class TestStreamingBatchParser:
    """Tests for StreamingBatchParser."""

    def test_bad_lines_are_isolated(self, sample_invoice, result_line, write_jsonl):
        """Test that a malformed line is recorded and the rest still parse."""
        path = write_jsonl([
            result_line(sample_invoice, "a"),
            "{not json",
            "",
            result_line(sample_invoice, "c"),
        ])
        parser = StreamingBatchParser(path)
        records = list(parser.records())

        assert [r.key for r in records] == ["a", "c"]
        assert [r.line_number for r in records] == [1, 4]
        assert len(parser.failures) == 1
        assert parser.failures[0].line_number == 2
        assert parser.failures[0].preview == "{not json"

    @pytest.mark.parametrize("bad_line", [
        json.dumps({"response": {"candidates": ["oops"]}}),
        json.dumps({"response": {"candidates": [{"content": "text"}]}}),
        json.dumps({"response": {"candidates": [{"content": {"parts": "text"}}]}}),
        json.dumps({"response": {"body": {"choices": ["oops"]}}}),
        json.dumps({"response": {"body": {"choices": [{"message": "text"}]}}}),
        "[" * 100000,
        json.dumps({"response": {"text": '{"a": ' + "[" * 100000 + "]" * 100000 + "}"}}),
    ], ids=[
        "candidate-not-object",
        "content-not-object",
        "parts-not-list",
        "choice-not-object",
        "message-not-object",
        "deep-line",
        "deep-payload",
    ])
    def test_odd_shapes_are_line_failures(self, bad_line, sample_invoice, result_line):
        """Test valid JSON of the wrong shape fails only its own line."""
        stream = io.StringIO("\n".join([
            result_line(sample_invoice, "a"),
            bad_line,
            result_line(sample_invoice, "c"),
        ]))
        parser = StreamingBatchParser(stream)
        records = list(parser.records())

        assert [r.key for r in records] == ["a", "c"]
        assert len(parser.failures) == 1
        assert parser.failures[0].line_number == 2

    def test_undecodable_bytes_are_a_line_failure(self, sample_invoice, result_line):
        """Test invalid UTF-8 fails one line only."""
        data = (result_line(sample_invoice, "a") + "\n").encode() + b"\xff\xfe\n"
        parser = StreamingBatchParser(io.BytesIO(data))
        records = list(parser.records())
        assert len(records) == 1
        assert parser.failures[0].line_number == 2

    def test_text_stream_source(self, sample_invoice, result_line):
        """Test an open text stream is accepted."""
        stream = io.StringIO(result_line(sample_invoice) + "\r\n")
        records = list(StreamingBatchParser(stream))
        assert len(records) == 1

    def test_records_consumed_once(self, sample_invoice, result_line):
        """Test a second call to records() is rejected."""
        parser = StreamingBatchParser(io.StringIO(result_line(sample_invoice)))
        list(parser.records())
        with pytest.raises(RuntimeError):
            parser.records()

    def test_missing_file_is_systemic(self, temp_dir):
        """Test an unreadable source aborts with SystemicError."""
        parser = StreamingBatchParser(temp_dir / "missing.jsonl")
        with pytest.raises(SystemicError):
            list(parser.records())

    def test_lazy_reading(self, sample_invoice, result_line):
        """Test lines are read on demand rather than up front."""
        stream = io.StringIO("\n".join(result_line(sample_invoice, str(i)) for i in range(5)))
        parser = StreamingBatchParser(stream)
        records = parser.records()
        first = next(records)
        assert first.key == "0"
        assert parser.lines_read == 1
        records.close()

    def test_callback_form(self, sample_invoice, result_line):
        """Test iter_batch_records reports records and failures in file order."""
        stream = io.StringIO("\n".join([
            "garbage",
            result_line(sample_invoice, "ok"),
        ]))
        events = []
        failures = iter_batch_records(
            stream,
            on_record=lambda r: events.append(("record", r.line_number)),
            on_failure=lambda f: events.append(("failure", f.line_number)),
        )
        assert events == [("failure", 1), ("record", 2)]
        assert len(failures) == 1

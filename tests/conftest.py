"""Shared fixtures and helpers for logchunk tests."""

import json


def make_jsonl_content(records):
    """Generate JSON-lines content from a list of dicts."""
    return "".join(json.dumps(r) + "\n" for r in records)


def make_order_records(n, start=0):
    """Generate ``n`` fixed-width order events.

    Each order id appears twice, first with state 'open' then 'done', so
    every pair of records yields an open->done transition. All records
    serialise to the same number of bytes.
    """
    records = []
    for i in range(start, start + n):
        records.append({
            "type": "order",
            "id": f"{i // 2:06d}",
            "state": "open" if i % 2 == 0 else "done",
            "qty": 100 + i % 900,
        })
    return records


def make_text_lines(lines):
    """Generate a plain-text log from (timestamp, level, logger, message) tuples."""
    return "".join(f"{ts} {level} [{name}] {msg}\n" for ts, level, name, msg in lines)


def make_fix_message(fields, delimiter="\x01", begin="FIX.4.4"):
    """Build one FIX message with correct BodyLength(9) and CheckSum(10).

    ``fields`` is a list of (tag, value) pairs that follow 9=.
    """
    body = "".join(f"{tag}={value}{delimiter}" for tag, value in fields)
    head = f"8={begin}{delimiter}9={len(body)}{delimiter}"
    checksum = sum((head + body).encode()) % 256
    return f"{head}{body}10={checksum:03d}{delimiter}"


def make_fix_orders(n, delimiter="\x01"):
    """Generate ``n`` equal-length execution reports as one FIX stream."""
    messages = []
    for i in range(n):
        messages.append(make_fix_message([
            ("35", "8"),
            ("49", "SENDER"),
            ("56", "TARGET"),
            ("37", f"ORD{i // 2:06d}"),
            ("39", "0" if i % 2 == 0 else "2"),
            ("55", "ABC"),
        ], delimiter=delimiter))
    return "".join(messages)


def make_csv_content(header, rows, delimiter=","):
    """Generate delimited content from a header list and row lists."""
    lines = [delimiter.join(header)]
    lines.extend(delimiter.join(str(v) for v in row) for row in rows)
    return "\n".join(lines) + "\n"


def make_xml_content(records, root="events", tag="event"):
    """Generate an XML log with one record element per line.

    Each record is a dict of attributes; a 'msg' key becomes a child element.
    """
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', f"<{root}>"]
    for record in records:
        attrs = " ".join(f'{k}="{v}"' for k, v in record.items() if k != "msg")
        if "msg" in record:
            lines.append(f"  <{tag} {attrs}><msg>{record['msg']}</msg></{tag}>")
        else:
            lines.append(f"  <{tag} {attrs}/>")
    lines.append(f"</{root}>")
    return "\n".join(lines) + "\n"


def _avro_long(n):
    n = (n << 1) ^ (n >> 63)
    out = bytearray()
    while n > 0x7F:
        out.append((n & 0x7F) | 0x80)
        n >>= 7
    out.append(n)
    return bytes(out)


def _avro_bytes(data):
    return _avro_long(len(data)) + data


AVRO_SYNC = bytes(range(16))

AVRO_SCHEMA = {
    "type": "record",
    "name": "Event",
    "fields": [
        {"name": "id", "type": "long"},
        {"name": "state", "type": ["null", "string"]},
    ],
}


def make_avro_content(blocks, schema=None, sync=AVRO_SYNC, codec="null"):
    """Build an Avro object container file.

    ``blocks`` is a list of (object count, payload bytes). Payloads are
    opaque to the code under test, so any bytes will do.
    """
    schema = schema or AVRO_SCHEMA
    meta = {
        b"avro.schema": json.dumps(schema).encode(),
        b"avro.codec": codec.encode(),
    }
    out = bytearray(b"Obj\x01")
    out += _avro_long(len(meta))
    for key, value in meta.items():
        out += _avro_bytes(key) + _avro_bytes(value)
    out += _avro_long(0)
    out += sync
    for count, payload in blocks:
        out += _avro_long(count) + _avro_long(len(payload)) + payload + sync
    return bytes(out)

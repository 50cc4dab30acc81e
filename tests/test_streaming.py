"""
Tests for the incremental JSON array decoder in bulkpipe.streaming.
"""

import pytest

from bulkpipe.streaming import JsonArrayStreamDecoder, UnexpectedJsonPayload


def _decode(chunks: list[str]) -> list:
    decoder = JsonArrayStreamDecoder()
    items = []
    for chunk in chunks:
        items.extend(decoder.feed(chunk))
    items.extend(decoder.close())
    return items


def test_whole_document():
    assert _decode(['[{"Id": "1"}, {"Id": "2"}]']) == [{"Id": "1"}, {"Id": "2"}]


def test_elements_split_across_chunks():
    chunks = ['[{"Id": "1", "Na', 'me": "Acme"}', ', {"Id"', ': "2"}]']
    assert _decode(chunks) == [{"Id": "1", "Name": "Acme"}, {"Id": "2"}]


def test_elements_are_emitted_as_soon_as_complete():
    decoder = JsonArrayStreamDecoder()
    assert decoder.feed('[{"Id": "1"}, {"I') == [{"Id": "1"}]
    assert decoder.feed('d": "2"}]') == [{"Id": "2"}]
    assert decoder.close() == []


def test_scalar_split_at_chunk_boundary():
    assert _decode(["[12", "34, tr", "ue]"]) == [1234, True]


def test_empty_array_and_empty_body():
    assert _decode(["[ ]"]) == []
    assert _decode([""]) == []


def test_non_array_document_is_reported():
    with pytest.raises(UnexpectedJsonPayload) as excinfo:
        _decode(['{"exceptionCode": "InvalidBatch", ', '"exceptionMessage": "nope"}'])
    assert excinfo.value.payload["exceptionCode"] == "InvalidBatch"


def test_truncated_array():
    with pytest.raises(ValueError, match="truncated"):
        _decode(['[{"Id": "1"}, '])


def test_trailing_data():
    with pytest.raises(ValueError, match="after JSON array"):
        _decode(['[1] [2]'])


def test_missing_comma():
    with pytest.raises(ValueError, match="expected ','"):
        _decode(['[1 2]'])

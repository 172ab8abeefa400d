from __future__ import annotations

from core.message_ids import encode_document_id, message_id_for


def test_encoded_id_replaces_unsafe_characters() -> None:
    assert encode_document_id("?>?") == "Pz4_"
    assert encode_document_id("a") == "YQ__"


def test_same_url_maps_to_same_id() -> None:
    url = "https://www.sofiyskavoda.bg/water-stops/123"
    assert message_id_for(url) == message_id_for(url)
    assert not set("/+=") & set(message_id_for(url))


def test_split_messages_get_index_suffix() -> None:
    url = "https://example.org/notice"
    base = encode_document_id(url)
    assert message_id_for(url, 0, 1) == base
    assert message_id_for(url, 0, 2) == f"{base}_1"
    assert message_id_for(url, 1, 2) == f"{base}_2"


def test_missing_url_yields_random_ids() -> None:
    assert message_id_for(None) != message_id_for(None)

"""Corpus bookkeeping: idempotent changes, full replacement diffs, persistence."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from DandiSearch.SemanticSearch.corpus import Corpus
from DandiSearch.SemanticSearch.types import ChangeOp, Record, RecordChange


def _upsert(record_id: str, text: str, version: str = "1") -> RecordChange:
    return RecordChange(record_id, ChangeOp.UPSERT, Record(record_id, version, text))


def _delete(record_id: str) -> RecordChange:
    return RecordChange(record_id, ChangeOp.DELETE)


def test_apply_is_idempotent():
    corpus = Corpus()
    change = _upsert("000001", "rat olfactory bulb")

    assert corpus.apply(change) is True
    assert corpus.apply(change) is False
    assert corpus.apply(_delete("000001")) is True
    assert corpus.apply(_delete("000001")) is False
    assert len(corpus) == 0


def test_upserts_without_a_record_are_refused():
    corpus = Corpus()

    with pytest.raises(ValueError):
        corpus.apply(RecordChange("000001", ChangeOp.UPSERT))
    assert len(corpus) == 0


def test_apply_all_reports_final_state_per_id():
    corpus = Corpus([Record("000002", "1", "mouse visual cortex")])

    diff = corpus.apply_all(
        [
            _upsert("000001", "rat olfactory bulb"),
            _delete("000001"),
            _upsert("000003", "rat hippocampus"),
            _delete("000002"),
            _upsert("000003", "rat hippocampus"),
        ]
    )

    # 000001 was created then removed inside the batch
    assert diff.upserted == ("000003",)
    assert diff.deleted == ("000001", "000002")
    assert corpus.ids() == ["000003"]


def test_replace_all_diffs_against_previous_state():
    corpus = Corpus(
        [
            Record("000001", "1", "rat olfactory bulb"),
            Record("000002", "1", "mouse visual cortex"),
        ]
    )

    diff = corpus.replace_all(
        [
            Record("000001", "1", "rat olfactory bulb"),
            Record("000002", "2", "mouse visual cortex, revised"),
            Record("000003", "1", "rat hippocampus"),
        ]
    )

    assert diff.upserted == ("000002", "000003")
    assert diff.deleted == ()
    assert corpus.replace_all([]).deleted == ("000001", "000002", "000003")
    assert not corpus.replace_all([])


def test_save_and_load_round_trip(tmp_path):
    corpus = Corpus(
        [Record("000001", "draft", "rat olfactory bulb", {"species": ["Rattus norvegicus"]})],
        cursor="17",
    )
    path = tmp_path / "corpus.json"

    corpus.save(path)
    restored = Corpus.load(path)

    assert restored.cursor == "17"
    assert restored.records() == corpus.records()


_ids = st.sampled_from(["a", "b", "c", "d"])
_changes = st.one_of(
    st.builds(_upsert, _ids, st.sampled_from(["rat", "mouse", "zebrafish"])),
    st.builds(_delete, _ids),
)


@settings(max_examples=60, deadline=None)
@given(st.lists(_changes, max_size=20))
def test_replaying_a_change_feed_converges(changes):
    once = Corpus()
    once.apply_all(changes)
    twice = Corpus()
    twice.apply_all(changes)
    twice.apply_all(changes)

    expected = {}
    for change in changes:
        if change.op is ChangeOp.DELETE:
            expected.pop(change.record_id, None)
        else:
            expected[change.record_id] = change.record.text

    assert {r.id: r.text for r in once.records()} == expected
    assert once.records() == twice.records()

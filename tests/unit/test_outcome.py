"""Tests for rendering orchestrator outcomes."""

import pytest

from bounty_board_service.services.outcome import Ok, PartialOk, to_envelope


@pytest.mark.unit
def test_ok_envelope_omits_empty_meta():
    assert to_envelope(Ok({"id": 1}, "done")) == {"data": {"id": 1}, "message": "done"}


@pytest.mark.unit
def test_partial_envelope_carries_warning_and_meta():
    outcome = PartialOk({"id": 1}, "done", "comment failed", {"bounty_comment_posted": False})

    assert to_envelope(outcome) == {
        "data": {"id": 1},
        "message": "done",
        "warning": "comment failed",
        "meta": {"bounty_comment_posted": False},
    }

"""Tests for transfer session state tracking."""

import pytest

from cloudpack.sync.session import PullState, PushState, TransferSession


class TestTransferSession:
    """Test state transitions."""

    def test_push_happy_path(self):
        session = TransferSession(reference="r", state=PushState.BUILDING)

        for state in (
            PushState.DIFFING_REMOTE,
            PushState.UPLOADING_BLOBS,
            PushState.UPLOADING_MANIFEST,
            PushState.DONE,
        ):
            session.advance(state)

        assert session.state == PushState.DONE

    def test_pull_without_materialization(self):
        session = TransferSession(reference="r", state=PullState.FETCHING_MANIFEST)

        session.advance(PullState.DIFFING_CACHE)
        session.advance(PullState.DOWNLOADING_BLOBS)
        session.advance(PullState.DONE)

        assert session.state == PullState.DONE

    def test_manifest_cannot_precede_blobs(self):
        session = TransferSession(reference="r", state=PushState.DIFFING_REMOTE)

        with pytest.raises(RuntimeError, match="Invalid transition"):
            session.advance(PushState.UPLOADING_MANIFEST)

    def test_fail_from_any_state(self):
        session = TransferSession(reference="r", state=PushState.UPLOADING_BLOBS)

        session.fail("network down")

        assert session.state == PushState.FAILED
        assert session.failure == "network down"

    def test_terminal_states_are_final(self):
        session = TransferSession(reference="r", state=PullState.FETCHING_MANIFEST)
        session.fail("missing")

        with pytest.raises(RuntimeError, match="already failed"):
            session.advance(PullState.DIFFING_CACHE)

    def test_fail_after_done_keeps_state(self):
        session = TransferSession(reference="r", state=PushState.UPLOADING_MANIFEST)
        session.advance(PushState.DONE)

        session.fail("late")

        assert session.state == PushState.DONE
        assert session.failure == "late"

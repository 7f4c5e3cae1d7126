"""Tests for NegotiationSession offer/answer and candidate handling."""

import pytest

from activeaudit.errors import NegotiationFailure
from activeaudit.rtc.engine import SessionDescription
from activeaudit.rtc.negotiation import ConnectivityState, NegotiationSession
from tests.fakes import FakeNetwork

C1 = {"candidate": "candidate:1 1 udp 2130706431 10.0.0.2 50001 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
C2 = {"candidate": "candidate:2 1 udp 1694498815 203.0.113.9 50002 typ srflx", "sdpMid": "0", "sdpMLineIndex": 0}


class TestCandidates:
    """Remote candidates are queued until a remote description exists."""

    async def test_early_candidates_are_flushed_in_order(self) -> None:
        network = FakeNetwork()
        connection = network.factory("relay")()
        session = NegotiationSession(connection)

        await session.add_candidate(C1)
        await session.add_candidate(C2)
        assert session.pending_candidates == [C1, C2]
        assert connection.applied_candidates == []

        await session.accept_offer(SessionDescription(sdp="broker:offer:1:restart=False", type="offer"))

        assert connection.applied_candidates == [C1, C2]
        assert session.pending_candidates == []

    async def test_bad_queued_candidate_is_skipped(self) -> None:
        network = FakeNetwork()
        connection = network.factory("relay")()
        session = NegotiationSession(connection)

        for candidate in (C1, "garbage", C2):
            await session.add_candidate(candidate)
        answer = await session.accept_offer(SessionDescription(sdp="broker:offer:1:restart=False", type="offer"))

        assert answer.type == "answer"
        assert connection.applied_candidates == [C1, C2]
        assert session.pending_candidates == []

    async def test_bad_live_candidate_raises(self) -> None:
        network = FakeNetwork()
        session = NegotiationSession(network.factory("relay")())
        await session.accept_offer(SessionDescription(sdp="broker:offer:1:restart=False", type="offer"))

        with pytest.raises(NegotiationFailure):
            await session.add_candidate("garbage")

    async def test_candidates_after_remote_description_apply_directly(self) -> None:
        network = FakeNetwork()
        connection = network.factory("relay")()
        session = NegotiationSession(connection)
        await session.accept_offer(SessionDescription(sdp="broker:offer:1:restart=False", type="offer"))

        await session.add_candidate(C1)
        await session.add_candidate(None)

        assert connection.applied_candidates == [C1, None]

    async def test_local_candidates_wait_for_release(self) -> None:
        network = FakeNetwork()
        emitted = []
        session = NegotiationSession(network.factory("broker", [C1, C2])(), on_candidate=emitted.append)

        await session.create_offer()
        assert emitted == []

        session.release_candidates()
        assert emitted == [C1, C2, None]


class TestDescriptions:
    async def test_accept_offer_returns_answer(self) -> None:
        network = FakeNetwork()
        session = NegotiationSession(network.factory("relay")())
        offer = SessionDescription(sdp="broker:offer:1:restart=False", type="offer")

        answer = await session.accept_offer(offer)

        assert answer.type == "answer"
        assert session.remote_description == offer
        assert session.local_description == answer

    async def test_malformed_offer_raises_negotiation_failure(self) -> None:
        network = FakeNetwork()
        session = NegotiationSession(network.factory("relay")())

        with pytest.raises(NegotiationFailure):
            await session.accept_offer(SessionDescription(sdp="garbage", type="offer"))
        assert session.remote_description is None

    async def test_ice_restart_offer_expects_a_new_answer(self) -> None:
        network = FakeNetwork()
        connection = network.factory("broker")()
        session = NegotiationSession(connection)
        remote = NegotiationSession(network.factory("relay")())
        answer = await remote.accept_offer(await session.create_offer())
        await session.accept_answer(answer)
        assert session.connectivity_state is ConnectivityState.CONNECTED

        offer = await session.create_offer(ice_restart=True)

        assert connection.restarts == 1
        assert "restart=True" in offer.sdp
        assert session.remote_description is None
        assert session.connectivity_state is ConnectivityState.NEW


class TestConnectivity:
    async def test_engine_states_map_to_connectivity(self) -> None:
        network = FakeNetwork()
        connection = network.factory("broker")()
        changes = []
        session = NegotiationSession(connection, on_connectivity=changes.append)

        connection.report_state("connecting")
        connection.report_state("connected")
        connection.report_state("connected")
        connection.report_state("failed")

        assert changes == [ConnectivityState.CONNECTED, ConnectivityState.DISCONNECTED]
        assert session.connectivity_state is ConnectivityState.DISCONNECTED

    async def test_close_closes_the_connection_once(self) -> None:
        network = FakeNetwork()
        connection = network.factory("broker")()
        session = NegotiationSession(connection)

        await session.close()
        await session.close()

        assert connection.closed
        assert session.closed

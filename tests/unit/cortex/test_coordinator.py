"""
Coordinator Unit Tests
======================

[CRITICAL] State machine of split inference:
- layer partition and role reconciliation
- session lifecycle and activation queueing
- direct-call results (SendResult) and async error reporting (on_error)

Two coordinators are linked through LoopbackChannel; messages move only
on LoopbackChannel.pump(), so every handler runs outside the sender.
"""

import logging

import pytest
import numpy as np


def _pump(loopback_pair) -> int:
    from core.peer import LoopbackChannel
    a, b = loopback_pair
    return LoopbackChannel.pump(a, b)


def _outbox_types(channel):
    return [msg["type"] for msg in channel.outbox]


# ============================================================================
# Configuration
# ============================================================================

class TestConfigure:
    """Test configure_first_half / configure_second_half."""

    def test_first_half_ranges(self, coordinator_pair, loopback_pair):
        from cortex.distributed.protocol import Role
        from cortex.distributed.coordinator import CoordinatorState

        first, _ = coordinator_pair
        a, _ = loopback_pair

        assert first.configure_first_half() is first
        assert first.role == Role.FIRST_HALF
        assert first.local_layers == (0, 3)
        assert first.remote_layers == (4, 7)
        assert first.state == CoordinatorState.READY

        msg = a.outbox[0]
        assert msg["type"] == "layer_assign"
        assert msg["role"] == "first_half"
        assert msg["local_layers"] == [0, 3]
        assert msg["remote_layers"] == [4, 7]
        assert msg["model_config"] == {"total_layers": 8, "hidden_dim": 16, "split_layer": 3}
        assert msg["node_id"] == "node-a"

    def test_second_half_ranges(self, coordinator_pair, loopback_pair):
        _, second = coordinator_pair
        _, b = loopback_pair

        second.configure_second_half()

        assert second.local_layers == (4, 7)
        assert second.remote_layers == (0, 3)
        assert "model_config" not in b.outbox[0]

    @pytest.mark.parametrize("total,split", [(2, 0), (8, 3), (32, 15), (32, 30), (80, 39)])
    def test_partition_covers_all_layers(self, total, split):
        """Local and remote ranges are disjoint and cover [0, total-1]."""
        from config import ModelConfig
        from cortex.distributed.coordinator import Coordinator

        for configure in ("configure_first_half", "configure_second_half"):
            coordinator = Coordinator(model_config=ModelConfig(total, 16, split))
            getattr(coordinator, configure)()

            local = set(range(coordinator.local_layers[0], coordinator.local_layers[1] + 1))
            remote = set(range(coordinator.remote_layers[0], coordinator.remote_layers[1] + 1))
            assert local.isdisjoint(remote)
            assert local | remote == set(range(total))

    def test_state_transitions(self, model_config):
        from cortex.distributed.coordinator import Coordinator, CoordinatorState

        transitions = []
        coordinator = Coordinator(
            model_config=model_config,
            on_state_change=lambda new, old: transitions.append((old, new)),
        )
        coordinator.configure_first_half()

        assert transitions == [
            (CoordinatorState.IDLE, CoordinatorState.CONFIGURING),
            (CoordinatorState.CONFIGURING, CoordinatorState.READY),
        ]

    def test_without_peer(self, model_config):
        """A coordinator with no channel still configures locally."""
        from cortex.distributed.coordinator import Coordinator

        coordinator = Coordinator(model_config=model_config)
        coordinator.configure_second_half()
        assert coordinator.local_layers == (4, 7)


# ============================================================================
# Layer assignment
# ============================================================================

class TestLayerAssign:
    """Test handle_layer_assign reconciliation."""

    def test_peer_adopts_complement(self, coordinator_pair, loopback_pair):
        from cortex.distributed.protocol import Role

        first, second = coordinator_pair
        a, b = loopback_pair

        first.configure_first_half()
        _pump(loopback_pair)

        assert second.role == Role.SECOND_HALF
        assert second.local_layers == first.remote_layers
        assert second.remote_layers == first.local_layers
        assert first.role == Role.FIRST_HALF

        # one announcement each way, no ping-pong
        assert a.sent_count == 1
        assert b.sent_count == 1

    def test_split_adopted_from_first_half(self, loopback_pair):
        """Second half with a different local config adopts 32 layers split at 15."""
        from config import ModelConfig
        from cortex.distributed.coordinator import Coordinator

        a, b = loopback_pair
        first = Coordinator(peer=a, model_config=ModelConfig(32, 4096, 15), node_id="node-a")
        second = Coordinator(peer=b, model_config=ModelConfig(8, 16, 3), node_id="node-b")
        a.on_message = first.handle_message
        b.on_message = second.handle_message

        first.configure_first_half()
        _pump(loopback_pair)

        assert first.local_layers == (0, 15)
        assert second.local_layers == (16, 31)
        assert second.remote_layers == (0, 15)
        assert second.total_layers == 32
        assert second.hidden_dim == 4096

    def test_config_mismatch_logged(self, coordinator_pair, caplog):
        _, second = coordinator_pair

        with caplog.at_level(logging.WARNING):
            second.handle_layer_assign({
                "type": "layer_assign",
                "role": "first_half",
                "local_layers": [0, 3],
                "remote_layers": [4, 7],
                "model_config": {"total_layers": 8, "hidden_dim": 32, "split_layer": 3},
            })

        assert second.hidden_dim == 32
        assert "hidden_dim=32 differs from local 16" in caplog.text

    def test_full_peer_ignored(self, coordinator_pair):
        from cortex.distributed.protocol import Role

        _, second = coordinator_pair
        second.handle_layer_assign({
            "type": "layer_assign", "role": "full", "local_layers": [0, 7], "remote_layers": [0, 7],
        })
        assert second.role == Role.FULL
        assert second.local_layers is None

    def test_conflict_resolved_by_node_id(self, coordinator_pair, loopback_pair):
        """Both sides claim first_half: the lower node_id keeps it."""
        from cortex.distributed.protocol import Role

        first, second = coordinator_pair

        first.configure_first_half()
        second.configure_first_half()
        _pump(loopback_pair)

        assert first.role == Role.FIRST_HALF     # "node-a" < "node-b"
        assert second.role == Role.SECOND_HALF
        assert second.local_layers == first.remote_layers

    def test_conflict_on_second_half(self, coordinator_pair, loopback_pair):
        from cortex.distributed.protocol import Role

        first, second = coordinator_pair

        first.configure_second_half()
        second.configure_second_half()
        _pump(loopback_pair)

        assert first.role == Role.FIRST_HALF
        assert second.role == Role.SECOND_HALF

    def test_conflict_with_different_splits(self, loopback_pair):
        """The loser takes the winner's split; the winner keeps its own."""
        from config import ModelConfig
        from cortex.distributed.coordinator import Coordinator
        from cortex.distributed.protocol import Role

        a, b = loopback_pair
        first = Coordinator(peer=a, model_config=ModelConfig(32, 16, 15), node_id="node-a")
        second = Coordinator(peer=b, model_config=ModelConfig(32, 16, 10), node_id="node-b")
        a.on_message = first.handle_message
        b.on_message = second.handle_message

        first.configure_first_half()
        second.configure_first_half()
        _pump(loopback_pair)

        assert first.role == Role.FIRST_HALF
        assert second.role == Role.SECOND_HALF
        assert first.split_layer == 15
        assert second.split_layer == 15
        assert first.local_layers == (0, 15)
        assert first.remote_layers == (16, 31)
        assert second.local_layers == first.remote_layers
        assert second.remote_layers == first.local_layers

    def test_conflict_without_node_ids(self, model_config):
        """Without node ids the receiver adopts the complement silently and reports."""
        from core.peer import LoopbackChannel
        from cortex.distributed.coordinator import Coordinator, CoordinatorErrorCode
        from cortex.distributed.protocol import Role

        channel, _ = LoopbackChannel.pair()
        errors = []
        coordinator = Coordinator(peer=channel, model_config=model_config, on_error=errors.append)
        coordinator.configure_first_half()
        sent = channel.sent_count

        coordinator.handle_layer_assign({
            "type": "layer_assign", "role": "first_half", "local_layers": [0, 3], "remote_layers": [4, 7],
        })

        assert coordinator.role == Role.SECOND_HALF
        assert channel.sent_count == sent
        assert coordinator.last_error[0] == CoordinatorErrorCode.ROLE_CONFLICT
        assert len(errors) == 1

    def test_conflict_without_node_ids_settles(self, model_config, loopback_pair):
        from cortex.distributed.coordinator import Coordinator, CoordinatorErrorCode

        a, b = loopback_pair
        first = Coordinator(peer=a, model_config=model_config)
        second = Coordinator(peer=b, model_config=model_config)
        a.on_message = first.handle_message
        b.on_message = second.handle_message

        first.configure_first_half()
        second.configure_first_half()
        _pump(loopback_pair)

        assert a.sent_count == 1
        assert b.sent_count == 1
        assert first.last_error[0] == CoordinatorErrorCode.ROLE_CONFLICT
        assert second.last_error[0] == CoordinatorErrorCode.ROLE_CONFLICT

    def test_leaves_error_state(self, coordinator_pair):
        from cortex.distributed.coordinator import CoordinatorState

        _, second = coordinator_pair
        second.handle_peer_disconnected()
        assert second.state == CoordinatorState.ERROR

        second.handle_layer_assign({
            "type": "layer_assign", "role": "first_half", "local_layers": [0, 3], "remote_layers": [4, 7],
        })
        assert second.state == CoordinatorState.READY


# ============================================================================
# Sessions
# ============================================================================

class TestSessions:
    """Test session lifecycle."""

    def test_start_session(self, coordinator_pair, loopback_pair):
        from cortex.distributed.session import SessionState

        first, _ = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()

        session = first.start_session([1, 2, 3])

        assert session.state == SessionState.STARTED
        assert first.sessions.get(session.id) is session
        assert first.stats.inference_count == 1
        msg = a.outbox[-1]
        assert msg["type"] == "infer_start"
        assert msg["session_id"] == session.id
        assert msg["prompt_tokens"] == [1, 2, 3]
        assert msg["role"] == "first_half"

    def test_session_ids_unique(self, model_config):
        from cortex.distributed.coordinator import Coordinator

        coordinator = Coordinator(model_config=model_config)
        ids = {coordinator.start_session([]).id for _ in range(200)}
        assert len(ids) == 200

    def test_handle_infer_start(self, coordinator_pair, loopback_pair):
        from cortex.distributed.coordinator import CoordinatorState
        from cortex.distributed.protocol import Role
        from cortex.distributed.session import SessionState

        first, second = coordinator_pair
        first.configure_first_half()
        session = first.start_session([7, 8])
        _pump(loopback_pair)

        remote = second.sessions.get(session.id)
        assert remote is not None
        assert remote.state == SessionState.STARTED_REMOTE
        assert remote.prompt_tokens == [7, 8]
        assert remote.remote_role == Role.FIRST_HALF
        assert second.state == CoordinatorState.WAITING_ACTIVATION

    def test_end_session(self, coordinator_pair, loopback_pair):
        from cortex.distributed.coordinator import CoordinatorState

        first, second = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()
        session = first.start_session([1])
        _pump(loopback_pair)

        assert first.end_session(session.id) is True
        assert session.is_completed
        assert a.outbox[-1] == {"type": "infer_done", "session_id": session.id, "tokens_generated": 0}

        _pump(loopback_pair)
        assert second.sessions.get(session.id).is_completed
        assert second.state == CoordinatorState.READY

    def test_end_unknown_session(self, coordinator_pair):
        first, _ = coordinator_pair
        assert first.end_session("missing") is False

    def test_close_session(self, coordinator_pair):
        first, _ = coordinator_pair
        session = first.start_session([])
        assert first.close_session(session.id) is True
        assert first.sessions.get(session.id) is None


# ============================================================================
# send_activation
# ============================================================================

class TestSendActivation:
    """Test send_activation results and accounting."""

    def test_role_violation(self, coordinator_pair, hidden_state):
        from cortex.distributed.coordinator import CoordinatorErrorCode

        _, second = coordinator_pair
        second.configure_second_half()
        session = second.start_session([])

        result = second.send_activation(session.id, 5, hidden_state())

        assert not result.success
        assert result.error == "only first_half sends activations"
        assert result.code == CoordinatorErrorCode.ROLE_VIOLATION
        assert second.stats.activations_sent == 0

    def test_unconfigured_is_role_violation(self, model_config, hidden_state):
        from cortex.distributed.coordinator import Coordinator, CoordinatorErrorCode

        coordinator = Coordinator(model_config=model_config)
        result = coordinator.send_activation("s", 3, hidden_state())
        assert result.code == CoordinatorErrorCode.ROLE_VIOLATION

    def test_unknown_session(self, coordinator_pair, hidden_state):
        from cortex.distributed.coordinator import CoordinatorErrorCode

        first, _ = coordinator_pair
        first.configure_first_half()

        result = first.send_activation("deadbeef-123", 3, hidden_state())

        assert not result.success
        assert "unknown session" in result.error
        assert result.code == CoordinatorErrorCode.UNKNOWN_SESSION

    def test_success_updates_counters(self, coordinator_pair, loopback_pair, hidden_state):
        from cortex.distributed.codec import calc_size

        first, _ = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()
        session = first.start_session([])

        result = first.send_activation(session.id, 3, hidden_state(seq_len=2))

        expected = calc_size((1, 2, 16), "float16")
        assert result.success
        assert result.bytes == expected
        assert first.stats.activations_sent == 1
        assert first.stats.bytes_transferred == expected
        assert session.stats.activation_transfers == 1
        assert session.stats.total_bytes == expected
        assert a.outbox[-1]["type"] == "infer_act"
        assert a.outbox[-1]["layer"] == 3

    def test_raw_bytes_default_shape(self, coordinator_pair, loopback_pair):
        """Raw bytes are shaped as (1, seq_len, hidden_dim) of float16."""
        first, _ = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()
        session = first.start_session([])

        first.send_activation(session.id, 3, b"\x00" * (3 * 16 * 2))

        tensor = a.outbox[-1]["tensor"]
        assert tensor["shape"] == [1, 3, 16]
        assert tensor["dtype"] == "float16"

    def test_float32_cast_to_wire_dtype(self, coordinator_pair, loopback_pair):
        first, _ = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()
        session = first.start_session([])

        first.send_activation(session.id, 3, np.ones((1, 2, 16), dtype=np.float32))

        assert a.outbox[-1]["tensor"]["dtype"] == "float16"
        assert a.outbox[-1]["tensor"]["size"] == 64

    def test_send_failure_still_counted(self, coordinator_pair, loopback_pair, hidden_state):
        """Counters are updated before the channel write is attempted."""
        from cortex.distributed.coordinator import CoordinatorErrorCode

        first, _ = coordinator_pair
        a, _ = loopback_pair
        first.configure_first_half()
        session = first.start_session([])
        a.fail_sends = True

        result = first.send_activation(session.id, 3, hidden_state())

        assert not result.success
        assert result.code == CoordinatorErrorCode.SEND_FAILED
        assert result.bytes > 0
        assert first.stats.activations_sent == 1
        assert first.stats.bytes_transferred == result.bytes

    def test_codec_error(self, coordinator_pair):
        from cortex.distributed.coordinator import CoordinatorErrorCode

        first, _ = coordinator_pair
        first.configure_first_half()
        session = first.start_session([])

        result = first.send_activation(session.id, 3, [1, 2, 3], shape=(3,))

        assert result.code == CoordinatorErrorCode.CODEC_ERROR
        assert first.stats.activations_sent == 0


# ============================================================================
# Activation handling
# ============================================================================

def _act(session_id: str, layer: int = 3, hot: int = 0):
    from cortex.distributed.codec import create_activation_message
    data = np.zeros((1, 2, 16), dtype=np.float16)
    data[0, -1, hot] = 1.0
    return create_activation_message(session_id, layer, data)


class TestHandleActivation:
    """Test handle_activation / continue_inference."""

    @pytest.fixture
    def receiver(self, model_config):
        """Second half without an engine, recording hooks."""
        from cortex.distributed.coordinator import Coordinator

        events = {"errors": [], "tokens": [], "received": []}
        coordinator = Coordinator(
            model_config=model_config,
            on_error=events["errors"].append,
            on_token=lambda sid, tok: events["tokens"].append((sid, tok)),
            on_activation_received=lambda sid, layer, tensor: events["received"].append((sid, layer, tensor)),
        )
        coordinator.configure_second_half()
        return coordinator, events

    def test_queued_until_engine_available(self, receiver, mock_engine):
        from cortex.distributed.coordinator import CoordinatorErrorCode

        coordinator, events = receiver
        coordinator.handle_activation(_act("s1", hot=9))

        session = coordinator.sessions.get("s1")
        assert len(session.pending_activations) == 1
        assert coordinator.last_error[0] == CoordinatorErrorCode.NO_ENGINE
        assert len(events["errors"]) == 1

        coordinator.engine = mock_engine
        token = coordinator.continue_inference("s1")

        assert token.id == 9
        assert len(session.pending_activations) == 0
        assert [t.id for t in session.generated_tokens] == [9]

    def test_stub_session_for_early_activation(self, receiver):
        from cortex.distributed.session import SessionState

        coordinator, events = receiver
        coordinator.handle_activation(_act("early"))

        session = coordinator.sessions.get("early")
        assert session.state == SessionState.RECEIVING
        assert coordinator.stats.activations_received == 1
        assert events["received"][0][0] == "early"
        assert events["received"][0][1] == 3

    def test_infer_start_keeps_stub_queue(self, receiver):
        from cortex.distributed.session import SessionState

        coordinator, _ = receiver
        coordinator.handle_activation(_act("early"))
        coordinator.handle_infer_start({"type": "infer_start", "session_id": "early", "prompt_tokens": [1, 2]})

        session = coordinator.sessions.get("early")
        assert session.state == SessionState.STARTED_REMOTE
        assert session.prompt_tokens == [1, 2]
        assert len(session.pending_activations) == 1

    def test_fifo_order(self, receiver):
        from cortex.distributed.engine import CallableInferenceEngine

        coordinator, _ = receiver
        for layer in (1, 2, 3):
            coordinator.handle_activation(_act("s1", layer=layer))

        coordinator.engine = CallableInferenceEngine(lambda act: {"id": act.layer})
        tokens = [coordinator.continue_inference("s1").id for _ in range(3)]

        assert tokens == [1, 2, 3]

    def test_continue_on_empty_queue(self, coordinator_pair):
        _, second = coordinator_pair
        second.configure_second_half()
        second.handle_infer_start({"type": "infer_start", "session_id": "s1"})
        state = second.state
        stats = second.stats.to_dict()

        assert second.continue_inference("s1") is None
        assert second.continue_inference("s1") is None
        assert second.state == state
        assert second.stats.to_dict() == stats

    def test_continue_unknown_session(self, coordinator_pair):
        _, second = coordinator_pair
        assert second.continue_inference("nope") is None

    def test_engine_generates_token(self, coordinator_pair, loopback_pair):
        from cortex.distributed.session import SessionState

        _, second = coordinator_pair
        _, b = loopback_pair
        second.configure_second_half()
        second.handle_infer_start({"type": "infer_start", "session_id": "s1"})

        second.handle_activation(_act("s1", hot=5))

        session = second.sessions.get("s1")
        assert [t.id for t in session.generated_tokens] == [5]
        assert session.state == SessionState.WAITING_ACTIVATION
        assert second.stats.tokens_generated == 1
        assert b.outbox[-1] == {"type": "infer_token", "session_id": "s1", "token": {"id": 5, "text": "[5]"}}

    def test_parse_errors_enter_error_state(self, receiver):
        from cortex.distributed.coordinator import CoordinatorState

        coordinator, events = receiver
        bad = {"type": "infer_act", "session_id": "s1"}

        coordinator.handle_activation(bad)
        coordinator.handle_activation(bad)
        assert coordinator.state == CoordinatorState.READY
        assert events["errors"][0].startswith("activation parse error: ")
        assert coordinator.sessions.get("s1") is None

        coordinator.handle_activation(bad)
        assert coordinator.state == CoordinatorState.ERROR
        assert coordinator.stats.parse_errors == 3

    def test_valid_activation_resets_parse_failures(self, receiver):
        from cortex.distributed.coordinator import CoordinatorState

        coordinator, _ = receiver
        bad = {"type": "infer_act", "session_id": "s1"}

        coordinator.handle_activation(bad)
        coordinator.handle_activation(bad)
        coordinator.handle_activation(_act("s1"))
        coordinator.handle_activation(bad)
        coordinator.handle_activation(bad)

        assert coordinator.state != CoordinatorState.ERROR

    def test_corrupted_tensor(self, receiver):
        coordinator, events = receiver
        msg = _act("s1")
        msg["tensor"]["checksum"] = "0" * 16

        coordinator.handle_activation(msg)

        assert "checksum mismatch" in events["errors"][0]
        assert coordinator.sessions.get("s1") is None

    def test_engine_failure(self, model_config):
        from cortex.distributed.coordinator import Coordinator, CoordinatorState, CoordinatorErrorCode
        from cortex.distributed.engine import CallableInferenceEngine

        def boom(act):
            raise RuntimeError("device lost")

        errors = []
        coordinator = Coordinator(
            engine=CallableInferenceEngine(boom),
            model_config=model_config,
            on_error=errors.append,
        )
        coordinator.configure_second_half()
        coordinator.handle_activation(_act("s1"))

        assert coordinator.state == CoordinatorState.ERROR
        assert coordinator.last_error[0] == CoordinatorErrorCode.ENGINE_ERROR
        assert "device lost" in errors[0]
        assert len(coordinator.sessions.get("s1").pending_activations) == 0


# ============================================================================
# Tokens
# ============================================================================

class TestTokens:
    """Test emit_token / handle_token."""

    def test_emit_token(self, coordinator_pair, loopback_pair):
        from cortex.distributed.protocol import Token

        first, second = coordinator_pair
        received = []
        first.on_token = lambda sid, tok: received.append((sid, tok))

        first.configure_first_half()
        session = first.start_session([])
        _pump(loopback_pair)

        assert second.emit_token(session.id, {"id": 42, "text": "answer"}) is True
        _pump(loopback_pair)

        assert second.sessions.get(session.id).generated_tokens == [Token(42, "answer")]
        assert session.generated_tokens == [Token(42, "answer")]
        assert received == [(session.id, Token(42, "answer"))]

    def test_emit_unknown_session(self, coordinator_pair, loopback_pair):
        _, second = coordinator_pair
        _, b = loopback_pair

        assert second.emit_token("missing", {"id": 1}) is False
        assert len(b.outbox) == 0

    def test_token_for_unknown_session(self, coordinator_pair):
        """Hook fires even when the session is unknown; nothing is created."""
        first, _ = coordinator_pair
        received = []
        first.on_token = lambda sid, tok: received.append(sid)

        first.handle_token({"type": "infer_token", "session_id": "ghost", "token": {"id": 1}})

        assert received == ["ghost"]
        assert first.sessions.get("ghost") is None


# ============================================================================
# Dispatch
# ============================================================================

class TestHandleMessage:
    """Test handle_message dispatch."""

    def test_every_type_has_handler(self, coordinator_pair):
        from cortex.distributed.protocol import InferMessageType

        first, _ = coordinator_pair
        assert set(first._handlers) == set(InferMessageType)

    @pytest.mark.parametrize("msg", [{"type": "ping"}, {"type": "PEER_LIST"}, {}, {"type": None}])
    def test_foreign_messages(self, coordinator_pair, msg):
        first, _ = coordinator_pair
        assert first.handle_message(msg) is False

    def test_known_message(self, coordinator_pair):
        _, second = coordinator_pair
        assert second.handle_message({"type": "infer_start", "session_id": "s1"}) is True
        assert "s1" in second.sessions

    def test_malformed_known_message(self, coordinator_pair):
        from cortex.distributed.coordinator import CoordinatorErrorCode

        _, second = coordinator_pair
        errors = []
        second.on_error = errors.append

        assert second.handle_message({"type": "layer_assign", "role": "sideways"}) is True
        assert errors and errors[0].startswith("malformed layer_assign message")
        assert second.last_error[0] == CoordinatorErrorCode.MALFORMED_MESSAGE

    def test_infer_done_unknown_session(self, coordinator_pair):
        from cortex.distributed.coordinator import CoordinatorState

        _, second = coordinator_pair
        second.handle_peer_disconnected()

        assert second.handle_message({"type": "infer_done", "session_id": "ghost"}) is True
        assert second.state == CoordinatorState.READY


# ============================================================================
# Full exchange
# ============================================================================

class TestLoopbackExchange:
    """Full generation loop between two coordinators."""

    def test_generate_tokens(self, coordinator_pair, loopback_pair, hidden_state):
        from cortex.distributed.coordinator import CoordinatorState

        first, second = coordinator_pair

        first.configure_first_half()
        _pump(loopback_pair)
        session = first.start_session([1, 2, 3])
        _pump(loopback_pair)

        for hot in (5, 11, 2):
            result = first.send_activation(session.id, first.split_layer, hidden_state(hot=hot))
            assert result.success
            _pump(loopback_pair)

        assert [t.id for t in session.generated_tokens] == [5, 11, 2]
        assert second.stats.activations_received == 3
        assert second.stats.tokens_generated == 3

        first.end_session(session.id)
        _pump(loopback_pair)

        assert second.sessions.get(session.id).is_completed
        assert second.state == CoordinatorState.READY
        assert first.state == CoordinatorState.READY

    def test_disconnect_enters_error(self, coordinator_pair, loopback_pair):
        from cortex.distributed.coordinator import CoordinatorState

        first, second = coordinator_pair
        a, b = loopback_pair
        b.on_disconnect = second.handle_peer_disconnected

        first.configure_first_half()
        _pump(loopback_pair)
        a.close()

        assert second.state == CoordinatorState.ERROR


# ============================================================================
# Reporting
# ============================================================================

class TestReporting:
    """Test info() and get_stats()."""

    def test_info(self):
        from config import ModelConfig
        from cortex.distributed.coordinator import Coordinator

        coordinator = Coordinator(model_config=ModelConfig(32, 4096, 15))
        coordinator.configure_first_half()
        text = coordinator.info()

        assert "Role: first_half" in text
        assert "Model: 32 layers, hidden_dim=4096" in text
        assert "Split: layer 15 (local=0-15, remote=16-31)" in text
        assert "Activation size (2k seq): 16.0 MB" in text

    def test_get_stats(self, coordinator_pair):
        first, _ = coordinator_pair
        first.configure_first_half()
        first.start_session([])

        stats = first.get_stats()
        assert stats["role"] == "first_half"
        assert stats["state"] == "ready"
        assert stats["local_layers"] == [0, 3]
        assert stats["sessions"] == 1
        assert stats["stats"]["inference_count"] == 1

    def test_cleanup_sessions(self, coordinator_pair):
        first, _ = coordinator_pair
        session = first.start_session([])
        first.end_session(session.id)
        session.ended_at = 0.0

        assert first.cleanup_sessions() == 1
        assert len(first.sessions) == 0

from types import SimpleNamespace

from ots_federation.federation.connection import FederationConnection
from ots_federation.federation.router import FederationEvent, MessageRouter
from ots_federation.federation.snapshot import PeerSnapshot
from ots_federation.federation.supervisor import PeerWorker
from ots_federation.models.Federation import Federation
from tests.helpers import create_peer, peer_state, wait_for


def idle_worker(data_types, queue_size=10, connected=True):
    """A worker holding a session whose sender is not running, so offered events stay queued"""
    config = {"OTS_FEDERATION_QUEUE_SIZE": queue_size}
    supervisor = SimpleNamespace(app=SimpleNamespace(config=config))
    peer = PeerSnapshot(id=1, name="alpha", address="127.0.0.1", port=8089, protocol="tcp", enabled=True,
                        push_data_types=frozenset(data_types))

    worker = PeerWorker(supervisor, peer)
    worker.connection = FederationConnection(peer, config, worker.counters)
    worker.connected = connected
    return worker


def router_for(*workers):
    return MessageRouter(SimpleNamespace(workers=lambda: list(workers)))


def queued(worker):
    return list(worker.connection.outbound.queue)


def test_publish_only_to_accepting_peers():
    cot_only = idle_worker(["cot"])
    chat_and_cot = idle_worker(["cot", "chat"])
    router = router_for(cot_only, chat_and_cot)

    assert router.publish(FederationEvent(Federation.DATA_TYPE_CHAT, b"<chat/>")) == 1

    assert queued(cot_only) == []
    assert queued(chat_and_cot) == [b"<chat/>"]
    assert cot_only.counters.drain() == (0, 0)


def test_disconnected_peers_are_skipped():
    worker = idle_worker(["cot"], connected=False)

    assert router_for(worker).publish(FederationEvent(Federation.DATA_TYPE_COT, b"<event/>")) == 0
    assert queued(worker) == []
    assert worker.counters.drain() == (0, 0)


def test_full_queue_drops_newest_and_counts_failure():
    worker = idle_worker(["cot"], queue_size=2)
    router = router_for(worker)

    for i in range(3):
        router.publish(FederationEvent(Federation.DATA_TYPE_COT, f"<event n='{i}'/>".encode()))

    assert queued(worker) == [b"<event n='0'/>", b"<event n='1'/>"]
    assert worker.counters.drain() == (0, 1)


def test_unknown_data_type_is_dropped():
    worker = idle_worker(list(Federation.DATA_TYPES))

    assert router_for(worker).publish(FederationEvent("sms", b"<event/>")) == 0
    assert queued(worker) == []


def test_string_payloads_are_encoded():
    worker = idle_worker(["cot"])
    router_for(worker).publish(FederationEvent(Federation.DATA_TYPE_COT, "<event/>"))
    assert queued(worker) == [b"<event/>"]


def test_queued_events_count_as_failed_when_session_ends():
    worker = idle_worker(["cot"])
    router = router_for(worker)
    router.publish(FederationEvent(Federation.DATA_TYPE_COT, b"<event/>"))
    router.publish(FederationEvent(Federation.DATA_TYPE_COT, b"<event/>"))

    worker.connection.disconnect()

    assert worker.counters.drain() == (0, 2)
    assert worker.offer(b"<event/>") is False


def test_chat_never_counted_for_cot_only_peer(app, supervisor, listener):
    peer_id = create_peer(app, port=listener.port, push_data_types=["cot"])
    assert wait_for(lambda: peer_state(app, peer_id)["connection_status"] == Federation.STATUS_CONNECTED)
    router = app.federation_router

    assert router.publish(FederationEvent(Federation.DATA_TYPE_CHAT, b"<event type='b-t-f'/>")) == 0
    supervisor.flush_counters()
    state = peer_state(app, peer_id)
    assert state["messages_sent"] == 0
    assert state["messages_failed"] == 0

    assert router.publish(FederationEvent(Federation.DATA_TYPE_COT, b"<event type='a-f-G'/>")) == 1
    assert wait_for(lambda: b"a-f-G" in listener.data())

    def flushed_sent():
        supervisor.flush_counters()
        return peer_state(app, peer_id)["messages_sent"] == 1

    assert wait_for(flushed_sent)
    assert peer_state(app, peer_id)["messages_failed"] == 0
    assert b"b-t-f" not in listener.data()


def test_per_peer_order_is_preserved(app, supervisor, listener):
    peer_id = create_peer(app, port=listener.port)
    assert wait_for(lambda: peer_state(app, peer_id)["connection_status"] == Federation.STATUS_CONNECTED)

    for i in range(20):
        app.federation_router.publish(FederationEvent(Federation.DATA_TYPE_COT, f"<event n='{i}'/>".encode()))

    assert wait_for(lambda: b"<event n='19'/>" in listener.data())
    data = listener.data()
    positions = [data.index(f"<event n='{i}'/>".encode()) for i in range(20)]
    assert positions == sorted(positions)


def test_disabled_peer_stops_counting(app, supervisor, listener):
    peer_id = create_peer(app, port=listener.port)
    assert wait_for(lambda: peer_state(app, peer_id)["connection_status"] == Federation.STATUS_CONNECTED)

    with app.app_context():
        app.federation_registry.toggle(peer_id)
    supervisor.wake()
    assert wait_for(lambda: supervisor.get_worker(peer_id) is None)

    before = peer_state(app, peer_id)
    assert app.federation_router.publish(FederationEvent(Federation.DATA_TYPE_COT, b"<event/>")) == 0
    supervisor.flush_counters()
    after = peer_state(app, peer_id)
    assert after["messages_sent"] == before["messages_sent"]
    assert after["messages_failed"] == before["messages_failed"]

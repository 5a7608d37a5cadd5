import threading
from sparkdb.mode import ConnectivityMode, ModePublisher, default_publisher, subscribe_to_connection_mode, current_mode


def test_subscribe_gets_current_mode_immediately(publisher):
    seen = []
    publisher.subscribe(seen.append)
    assert seen == [ConnectivityMode.REMOTE]


def test_same_mode_is_not_republished(publisher):
    seen = []
    publisher.subscribe(seen.append)
    assert publisher.set_mode(ConnectivityMode.REMOTE) is False
    assert publisher.set_mode(ConnectivityMode.LOCAL) is True
    assert publisher.set_mode(ConnectivityMode.LOCAL) is False
    assert seen == [ConnectivityMode.REMOTE, ConnectivityMode.LOCAL]


def test_listeners_notified_in_registration_order(publisher):
    calls = []
    publisher.subscribe(lambda m: calls.append(("a", m.value)))
    publisher.subscribe(lambda m: calls.append(("b", m.value)))
    calls.clear()
    publisher.set_mode("local")
    assert calls == [("a", "local"), ("b", "local")]


def test_unsubscribe_stops_notifications(publisher):
    seen = []
    unsubscribe = publisher.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    publisher.set_mode(ConnectivityMode.LOCAL)
    assert seen == [ConnectivityMode.REMOTE]
    assert publisher.listener_count() == 0


def test_failing_listener_does_not_block_others(publisher, capsys):
    seen = []

    def broken(mode):
        raise RuntimeError("listener bug")

    publisher.subscribe(broken)
    publisher.subscribe(seen.append)
    publisher.set_mode(ConnectivityMode.LOCAL)
    assert seen[-1] is ConnectivityMode.LOCAL
    assert 'mode_listener_failed' in capsys.readouterr().err


def test_mode_values_match_wire_names():
    assert ConnectivityMode("remote") is ConnectivityMode.REMOTE
    assert ConnectivityMode.LOCAL.value == "local"


def test_concurrent_set_mode_publishes_each_transition_once():
    pub = ModePublisher()
    seen = []
    pub.subscribe(seen.append)
    barrier = threading.Barrier(8)

    def flip():
        barrier.wait()
        for _ in range(50):
            pub.set_mode(ConnectivityMode.LOCAL)
            pub.set_mode(ConnectivityMode.REMOTE)

    threads = [threading.Thread(target=flip) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    # no two consecutive notifications carry the same mode
    assert all(a != b for a, b in zip(seen, seen[1:]))
    assert seen[-1] is pub.mode


def test_process_wide_publisher_helpers():
    seen = []
    unsubscribe = subscribe_to_connection_mode(seen.append)
    try:
        assert seen == [current_mode()]
        assert current_mode() is default_publisher.mode
    finally:
        unsubscribe()

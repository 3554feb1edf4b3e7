from core.broadcaster import CHECKOUT_CHANNEL, Broadcaster, lane_channel


def test_publish_reaches_only_the_lane_subscribers():
    hub = Broadcaster()
    lane_one, lane_two = [], []
    hub.subscribe(lane_channel("L1"), lane_one.append)
    hub.subscribe(lane_channel("L2"), lane_two.append)

    delivered = hub.publish_session_updated("L1", {"sessionId": "s-1"})

    assert delivered == 1
    assert lane_two == []
    assert lane_one[0]["type"] == "SESSION_UPDATED"
    assert lane_one[0]["payload"] == {"sessionId": "s-1"}
    assert "timestamp" in lane_one[0]


def test_unsubscribe_stops_delivery():
    hub = Broadcaster()
    received = []
    unsubscribe = hub.subscribe(lane_channel("L1"), received.append)
    assert hub.subscriber_count(lane_channel("L1")) == 1

    unsubscribe()
    unsubscribe()

    assert hub.subscriber_count(lane_channel("L1")) == 0
    assert hub.publish_session_updated("L1", {}) == 0
    assert received == []


def test_failing_subscriber_does_not_block_others():
    hub = Broadcaster()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    hub.subscribe(lane_channel("L1"), broken)
    hub.subscribe(lane_channel("L1"), received.append)

    assert hub.publish_session_updated("L1", {"sessionId": "s-1"}) == 1
    assert len(received) == 1


def test_checkout_events_use_the_shared_channel():
    hub = Broadcaster()
    received = []
    hub.subscribe(CHECKOUT_CHANNEL, received.append)

    hub.publish_checkout_event("CHECKOUT_REQUESTED", {"requestId": "r-1"})

    assert [event["type"] for event in received] == ["CHECKOUT_REQUESTED"]


def test_lane_named_checkout_does_not_share_the_checkout_channel():
    hub = Broadcaster()
    lane_events, checkout_events = [], []
    hub.subscribe(lane_channel(CHECKOUT_CHANNEL), lane_events.append)
    hub.subscribe(CHECKOUT_CHANNEL, checkout_events.append)

    hub.publish_checkout_event("CHECKOUT_REQUESTED", {"requestId": "r-1"})
    hub.publish_session_updated(CHECKOUT_CHANNEL, {"sessionId": "s-1"})

    assert [event["type"] for event in lane_events] == ["SESSION_UPDATED"]
    assert [event["type"] for event in checkout_events] == ["CHECKOUT_REQUESTED"]

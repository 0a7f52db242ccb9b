from async_reply_service.prometheus import ReplyMetrics


def test_reply_metrics_counters_and_gauge():
    metrics = ReplyMetrics()

    metrics.record_poll("shop", emails_checked=3, replies_added=2, errors=1)
    metrics.inc_poll_failure("shop")
    metrics.inc_reply_sent(None)
    metrics.set_in_flight(2)

    output = metrics.generate_latest()
    assert b'ars_polls_total{tenant_id="shop"} 2.0' in output
    assert b'ars_emails_checked_total{tenant_id="shop"} 3.0' in output
    assert b'ars_replies_sent_total{tenant_id="default"} 1.0' in output
    assert b"ars_polls_in_flight 2.0" in output


def test_registries_are_independent():
    first = ReplyMetrics()
    second = ReplyMetrics()

    first.inc_reply_sent("shop")

    assert first.registry.get_sample_value("ars_replies_sent_total", {"tenant_id": "shop"}) == 1
    assert second.registry.get_sample_value("ars_replies_sent_total", {"tenant_id": "shop"}) is None

from mail_dispatcher.metrics import DeliveryMetrics


def test_delivery_metrics_counters_and_gauge():
    metrics = DeliveryMetrics()

    metrics.inc_sent("immediate")
    metrics.inc_sent("")
    metrics.inc_failed("retry")
    metrics.inc_retry()
    metrics.inc_skipped("quiet_hours")
    metrics.inc_rescheduled()
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'mds_sent_total{kind="immediate"} 2.0' in output
    assert b'mds_failed_total{kind="retry"} 1.0' in output
    assert b"mds_retries_total 1.0" in output
    assert b'mds_skipped_total{reason="quiet_hours"} 1.0' in output
    assert b"mds_rescheduled_total 1.0" in output
    assert b"mds_pending_jobs 3.0" in output


def test_instances_do_not_share_registry():
    first = DeliveryMetrics()
    second = DeliveryMetrics()
    first.inc_retry()
    assert second.registry.get_sample_value("mds_retries_total") == 0

"""Tests for Prometheus metrics."""

import pytest

from gesture_scroll.metrics import MetricsCollector


class TestMetricsCollector:
    def test_record_submissions(self):
        m = MetricsCollector()
        m.record_submission(0.012)
        m.record_submission(0.020)
        m.record_skip()
        m.record_failure()
        assert m.frames_submitted == 2
        assert m.frames_skipped == 1
        assert m.submission_failures == 1

    def test_record_results(self):
        m = MetricsCollector()
        m.record_results(1)
        m.record_results(0)
        m.record_results(2)
        assert m.results == 3
        assert m.hands_detected == 3

    def test_record_download_and_fallback(self):
        m = MetricsCollector()
        m.record_download(4096, 0.25)
        m.record_fallback()
        assert m.bytes_downloaded == 4096
        assert m.preload_seconds == 0.25
        assert m.preload_fallbacks == 1

    def test_render_prometheus_format(self):
        m = MetricsCollector()
        m.record_submission(0.005)
        m.record_results(1)
        m.set_connections(3)

        output = m.render()
        assert "gesture_scroll_frames_submitted_total 1" in output
        assert "gesture_scroll_results_total 1" in output
        assert "gesture_scroll_active_connections 3" in output
        assert "# HELP" in output
        assert "# TYPE gesture_scroll_preload_fallbacks_total counter" in output

    def test_histogram_buckets_are_cumulative(self):
        m = MetricsCollector()
        for _ in range(10):
            m.record_submission(0.003)
        m.record_submission(0.2)
        output = m.render()
        assert 'gesture_scroll_inference_latency_seconds_bucket{le="0.005"} 10' in output
        assert 'gesture_scroll_inference_latency_seconds_bucket{le="0.5"} 11' in output
        assert 'gesture_scroll_inference_latency_seconds_bucket{le="+Inf"} 11' in output
        assert "gesture_scroll_inference_latency_seconds_count 11" in output

    @pytest.mark.parametrize("hands,expected", [(1, 0.05), (0, 0.0)])
    def test_detection_rate(self, hands, expected):
        m = MetricsCollector()
        m.record_results(hands)
        assert f"gesture_scroll_hand_detection_rate {expected:.4f}" in m.render()

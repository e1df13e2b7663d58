"""Prometheus-compatible metrics for gesture-scroll.

Exposes /metrics in Prometheus text exposition format.
No external dependencies; generates the text format directly.

Tracked metrics:
- gesture_scroll_frames_submitted_total (counter)
- gesture_scroll_frames_skipped_total (counter)
- gesture_scroll_submission_failures_total (counter)
- gesture_scroll_results_total (counter)
- gesture_scroll_hands_detected_total (counter)
- gesture_scroll_inference_latency_seconds (histogram)
- gesture_scroll_hand_detection_rate (gauge)
- gesture_scroll_bytes_downloaded_total (counter)
- gesture_scroll_preload_seconds (gauge)
- gesture_scroll_preload_fallbacks_total (counter)
- gesture_scroll_active_connections (gauge)
"""

from __future__ import annotations

import threading
import time


class _Histogram:
    """Simple histogram with configurable buckets."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, b in enumerate(self.buckets):
                if value <= b:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> str:
        lines = [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} histogram",
        ]
        with self._lock:
            cumulative = 0
            for i, b in enumerate(self.buckets):
                cumulative += self.bucket_counts[i]
                lines.append(f'{name}_bucket{{le="{b}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return "\n".join(lines)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for the capture and preload paths."""

    def __init__(self):
        self.frames_submitted = 0
        self.frames_skipped = 0
        self.submission_failures = 0
        self.results = 0
        self.hands_detected = 0
        self.bytes_downloaded = 0
        self.preload_seconds = 0.0
        self.preload_fallbacks = 0
        self._active_connections = 0
        self._hand_detection_rate = 0.0
        self._lock = threading.Lock()

        # Inference latency: buckets from 5ms to 500ms
        self._latency = _Histogram(
            [0.005, 0.010, 0.020, 0.033, 0.050, 0.100, 0.250, 0.500]
        )

        self._start_time = time.time()

    def record_submission(self, latency_seconds: float):
        with self._lock:
            self.frames_submitted += 1
        self._latency.observe(latency_seconds)

    def record_skip(self):
        with self._lock:
            self.frames_skipped += 1

    def record_failure(self):
        with self._lock:
            self.submission_failures += 1

    def record_results(self, hands: int):
        with self._lock:
            self.results += 1
            self.hands_detected += hands

        # Exponential moving average of "a hand was visible"
        rate = 1.0 if hands > 0 else 0.0
        self._hand_detection_rate = 0.95 * self._hand_detection_rate + 0.05 * rate

    def record_download(self, nbytes: int, seconds: float):
        with self._lock:
            self.bytes_downloaded += nbytes
            self.preload_seconds = seconds

    def record_fallback(self):
        with self._lock:
            self.preload_fallbacks += 1

    def set_connections(self, count: int):
        self._active_connections = count

    def _block(self, name: str, kind: str, help_text: str, value) -> list[str]:
        return [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} {kind}",
            f"{name} {value}",
            "",
        ]

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []

        uptime = time.time() - self._start_time
        lines += self._block("gesture_scroll_uptime_seconds", "gauge", "Time since start", f"{uptime:.1f}")

        with self._lock:
            lines += self._block(
                "gesture_scroll_frames_submitted_total", "counter",
                "Frames submitted to the inference engine", self.frames_submitted,
            )
            lines += self._block(
                "gesture_scroll_frames_skipped_total", "counter",
                "Ticks skipped because the frame was not decodable", self.frames_skipped,
            )
            lines += self._block(
                "gesture_scroll_submission_failures_total", "counter",
                "Failed inference submissions", self.submission_failures,
            )
            lines += self._block(
                "gesture_scroll_results_total", "counter",
                "Inference results delivered", self.results,
            )
            lines += self._block(
                "gesture_scroll_hands_detected_total", "counter",
                "Hands detected across all results", self.hands_detected,
            )
            lines += self._block(
                "gesture_scroll_bytes_downloaded_total", "counter",
                "Asset bytes downloaded by the preloader", self.bytes_downloaded,
            )
            lines += self._block(
                "gesture_scroll_preload_seconds", "gauge",
                "Duration of the last successful preload", f"{self.preload_seconds:.3f}",
            )
            lines += self._block(
                "gesture_scroll_preload_fallbacks_total", "counter",
                "Preloads that fell back to direct URLs", self.preload_fallbacks,
            )

        lines.append(self._latency.render(
            "gesture_scroll_inference_latency_seconds",
            "Inference submission latency in seconds",
        ))
        lines.append("")

        lines += self._block(
            "gesture_scroll_hand_detection_rate", "gauge",
            "Exponential moving average of hand detection", f"{self._hand_detection_rate:.4f}",
        )
        lines += self._block(
            "gesture_scroll_active_connections", "gauge",
            "Current WebSocket connections", self._active_connections,
        )

        return "\n".join(lines) + "\n"

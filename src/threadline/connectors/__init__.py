"""Shared connector instrumentation.

Channel adapters record inbound events, outbound sends, catch-up recovery and
platform API calls through ``AdapterMetrics`` so every adapter exports the
same Prometheus series.
"""

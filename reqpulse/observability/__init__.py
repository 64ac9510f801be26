"""Request telemetry: metric registry, HTTP instrumentation, trace lifecycle, dashboard fan-out.

Metrics live in an in-process registry rendered in Prometheus text format.
Spans go through OpenTelemetry with a provider owned by ``TelemetryLifecycle``.
"""

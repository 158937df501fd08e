from .streaming import stream_run_telemetry

__all__ = ["stream_run_telemetry"]

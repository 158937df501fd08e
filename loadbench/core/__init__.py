"""
Run orchestration: fleet sizing and launch, the run state machine,
cancellation, result aggregation and live telemetry.
"""

"""
AccelStream Streaming Module

Session lifecycle, network telemetry, adaptive quality and proxy routing.

Components:
- StreamOrchestrator: Facade over the whole subsystem
- SessionManager: Per-session state machine and pipeline swaps
- NetworkTelemetryMonitor: Periodic network quality sampling
- AdaptiveQualityController: Tier recommendations with hysteresis
- ProxyPathResolver: Proxy validation and active route
- RetryManager: Open retries with backoff and software fallback
- ErrorClassifier: FFmpeg stderr classification
"""

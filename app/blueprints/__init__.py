"""
Compliance Journey Platform
Blueprint registry.

    health_bp   /api/v1/health/*   liveness / readiness probes
    journey_bp  /api/v1/...        compliance journey engine
"""

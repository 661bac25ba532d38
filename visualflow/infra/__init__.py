"""Infrastructure: telemetry and registry health monitoring."""

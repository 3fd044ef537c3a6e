"""
Cloud sync daemon package for the Pi Sense telemetry pipeline.

Reads unsent sensor records from the local store API, publishes them to an
MQTT broker (Cloud IoT bridge or a local Mosquitto), deletes them only after
broker acknowledgment, and reconciles pushed configuration parameters back
into the local store.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

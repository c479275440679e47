"""
Homeflow daemon package: SMA solar telemetry fusion.

Reads production from an SMA Sunny Boy inverter over Modbus TCP and net grid
power from an SMA energy meter over Speedwire multicast, fuses them into
per-second household power-flow measurements, derives "today" energy
totals and load-control signals, and publishes the results.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""

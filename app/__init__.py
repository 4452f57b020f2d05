"""
Smart Home Energy Monitoring - Telemetry Service

A FastAPI service that ingests device telemetry, streams it to connected
observers and derives energy consumption from power readings.
"""

__version__ = "1.0.0"
__author__ = "Smart Home Energy Team"
__description__ = "Telemetry ingestion and energy accounting for smart home monitoring"

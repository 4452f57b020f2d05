#!/usr/bin/env python3
"""
Telemetry Data Simulation Script for Smart Home Energy Monitoring

Generates 24 hours of one-minute power readings for the demo devices and
posts them to the telemetry service through the batch ingestion endpoint.
With --seed-devices the demo devices are first written straight into the
devices table, since ingestion rejects readings for unregistered devices.
"""

import argparse
import asyncio
import json
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
BASE_URL = "http://localhost:8000/api/v1/telemetry"
CHUNK_SIZE = 500
MAX_RETRIES = 5

# Device configurations with realistic power consumption patterns
DEVICE_CONFIGS = {
    "fridge-001": {
        "name": "Kitchen Refrigerator",
        "type": "appliance",
        "room": "Kitchen",
        "base_power": 150,
        "variation": 50,
        "cycle_hours": 4,
        "cycle_duration": 0.5,
    },
    "ac-001": {
        "name": "Living Room AC",
        "type": "hvac",
        "room": "Living Room",
        "base_power": 2000,
        "variation": 500,
        "cycle_hours": 2,
        "cycle_duration": 1.5,
    },
    "washer-001": {
        "name": "Washing Machine",
        "type": "appliance",
        "room": "Laundry",
        "base_power": 500,
        "variation": 200,
        "cycle_hours": 8,
        "cycle_duration": 1.0,
        "standby_power": 5,
    },
    "tv-001": {
        "name": "Living Room TV",
        "type": "electronics",
        "room": "Living Room",
        "base_power": 120,
        "variation": 30,
        "usage_hours": [(18, 23)],
        "standby_power": 2,
    },
    "lights-001": {
        "name": "Bedroom Lights",
        "type": "lighting",
        "room": "Bedroom",
        "base_power": 60,
        "variation": 20,
        "usage_hours": [(7, 8), (19, 22)],
        "standby_power": 0,
    },
}


async def seed_devices() -> int:
    """Insert the demo devices that are not registered yet"""
    from sqlalchemy import select

    from app.core.database import AsyncSessionLocal, close_db, init_db
    from app.models.device import Device

    await init_db()
    created = 0
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(Device.device_id).where(Device.device_id.in_(list(DEVICE_CONFIGS)))
            )
            existing = set(result.scalars().all())
            for device_id, config in DEVICE_CONFIGS.items():
                if device_id in existing:
                    continue
                session.add(Device(
                    device_id=device_id,
                    name=config["name"],
                    type=config["type"],
                    room=config["room"],
                    rated_power=float(config["base_power"] + config["variation"]),
                ))
                created += 1
            await session.commit()
    finally:
        await close_db()

    logger.info(f"Seeded {created} devices ({len(DEVICE_CONFIGS) - created} already present)")
    return created


class TelemetrySimulator:
    """Telemetry data simulator"""

    def __init__(self, base_url: str = BASE_URL, chunk_size: int = CHUNK_SIZE):
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.session = requests.Session()

    def calculate_device_power(self, device_id: str, timestamp: datetime) -> float:
        """Realistic power draw in watts for a device at the given time"""
        config = DEVICE_CONFIGS.get(device_id)
        if not config:
            return random.uniform(5, 250)

        variation = config["variation"]
        hour = timestamp.hour
        cycle_position = (hour % config.get("cycle_hours", 24)) + timestamp.minute / 60
        in_cycle = cycle_position < config.get("cycle_duration", 0)
        power = float(config["base_power"])

        if device_id == "fridge-001":
            power *= 1.3 if in_cycle else 0.7
        elif device_id == "ac-001":
            power *= 1.2 if 10 <= hour <= 22 else 0.3
            power *= 1.1 if in_cycle else 0.8
        elif device_id == "washer-001":
            if in_cycle:
                phase = timestamp.minute / 60
                if phase < 0.2:
                    power *= 0.3
                elif phase < 0.6:
                    power *= 1.2
                elif phase < 0.8:
                    power *= 0.8
                else:
                    power *= 1.5
            else:
                power = config["standby_power"]
        elif "usage_hours" in config:
            if any(start <= hour <= end for start, end in config["usage_hours"]):
                power += random.uniform(-variation / 2, variation / 2)
            else:
                power = config["standby_power"]

        power += random.uniform(-variation * 0.2, variation * 0.2)
        return max(0.0, round(power, 2))

    def generate_readings(self, start_time: datetime) -> List[Dict[str, Any]]:
        readings = []
        for minute_offset in range(24 * 60):
            timestamp = start_time + timedelta(minutes=minute_offset)
            for device_id in DEVICE_CONFIGS:
                power = self.calculate_device_power(device_id, timestamp)
                readings.append({
                    "deviceId": device_id,
                    "category": "power",
                    "value": power,
                    "status": power > 0,
                    "timestamp": timestamp.isoformat(),
                })
        return readings

    def send_batch(self, batch: List[Dict[str, Any]]) -> int:
        """Post one chunk, backing off on 429; returns how many records were stored"""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self.session.post(f"{self.base_url}/ingest/batch", json={"data": batch})
            except requests.RequestException as e:
                logger.error(f"Error sending batch: {e}")
                time.sleep(attempt)
                continue

            if response.status_code == 201:
                return len(response.json())
            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", attempt))
                logger.warning(f"Rate limited, retrying in {retry_after}s (attempt {attempt}/{MAX_RETRIES})")
                time.sleep(retry_after)
                continue

            logger.error(f"Failed to send batch: {response.status_code} - {response.text}")
            return 0

        logger.error(f"Giving up on batch after {MAX_RETRIES} attempts")
        return 0

    def simulate_24_hours(self, start_time: Optional[datetime] = None, delay: float = 0.0) -> Dict[str, Any]:
        """Simulate 24 hours of telemetry data"""
        if start_time is None:
            start_time = datetime.now(timezone.utc).replace(second=0, microsecond=0) - timedelta(hours=24)

        readings = self.generate_readings(start_time)
        total_points = len(readings)
        logger.info(f"Starting simulation for {len(DEVICE_CONFIGS)} devices over 24 hours")
        logger.info(f"Total data points to generate: {total_points}")

        stored = 0
        started = time.time()
        for offset in range(0, total_points, self.chunk_size):
            stored += self.send_batch(readings[offset:offset + self.chunk_size])
            if delay > 0:
                time.sleep(delay)
        duration = time.time() - started

        results = {
            "total_points": total_points,
            "stored": stored,
            "failed": total_points - stored,
            "success_rate": (stored / total_points) * 100 if total_points else 0,
            "duration_seconds": duration,
            "points_per_second": total_points / duration if duration > 0 else 0,
        }
        logger.info("Simulation completed!")
        logger.info(f"Results: {json.dumps(results, indent=2)}")
        return results


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="Smart Home Telemetry Simulator")
    parser.add_argument("--base-url", default=BASE_URL, help="Telemetry service base URL")
    parser.add_argument("--seed-devices", action="store_true", help="Register the demo devices in the database first")
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE, help="Records per batch request (max 1000)")
    parser.add_argument("--delay", type=float, default=0.5, help="Delay between batch requests (seconds)")
    parser.add_argument("--start-time", help="Start time (ISO format, defaults to 24 hours ago)")

    args = parser.parse_args()

    start_time = None
    if args.start_time:
        try:
            start_time = datetime.fromisoformat(args.start_time.replace('Z', '+00:00'))
        except ValueError:
            logger.error("Invalid start time format. Use ISO format (e.g., 2024-01-01T00:00:00)")
            return
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)

    if args.seed_devices:
        asyncio.run(seed_devices())

    simulator = TelemetrySimulator(args.base_url, chunk_size=args.chunk_size)
    try:
        results = simulator.simulate_24_hours(start_time, args.delay)

        if results["success_rate"] < 90:
            logger.warning(f"Low success rate: {results['success_rate']:.1f}%")
        else:
            logger.info(f"Simulation successful with {results['success_rate']:.1f}% success rate")

    except KeyboardInterrupt:
        logger.info("Simulation interrupted by user")
    except Exception as e:
        logger.error(f"Simulation failed: {e}")


if __name__ == "__main__":
    main()

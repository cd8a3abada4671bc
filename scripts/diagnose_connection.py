#!/usr/bin/env python3
"""
MoisSense Gateway - Connection Diagnostics
Polls the field node through the real sync loop and reports connectivity changes
"""

import os
import sys
import time
import signal
import logging

from dotenv import load_dotenv

# Add project to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from moissense.cloud.device_api import create_device_client
from moissense.core.alerts import describe_alert
from moissense.core.state_store import DeviceStateStore
from moissense.core.sync_loop import SyncLoop

# Global flag for graceful shutdown
running = True


def signal_handler(sig, frame):
    global running
    print('\n\n⚠️  Shutting down...')
    running = False


signal.signal(signal.SIGINT, signal_handler)


def diagnose_connection(base_url=None, interval=5.0):
    """Run continuous connection diagnostics."""
    print("=" * 70)
    print("MoisSense Gateway - Connection Diagnostics")
    print("=" * 70)
    print()
    print("This tool polls /api/latest and /api/events and reports every")
    print("online/offline transition. Unplug the node's network to test.")
    print()
    print("Press Ctrl+C to stop")
    print("=" * 70)
    print()

    client = create_device_client(base_url=base_url)
    store = DeviceStateStore()
    sync_loop = SyncLoop(client, store, interval=interval)

    print(f"Node: {client.base_url}")
    print("Attempting initial poll...")
    if not sync_loop.poll_once():
        print(f"❌ Initial poll failed: {store.state.connectivity.last_error}")
        print("\nTroubleshooting:")
        print("  1. Check MOISSENSE_API_URL in config/.env")
        print("  2. Check the Node-RED flow is deployed and listening")
        print(f"  3. Try: curl {client.base_url}/api/latest")
    else:
        snapshot = store.state.snapshot
        print("✅ Initial poll successful!")
        print(f"   Soil: {snapshot.soil_raw} ({snapshot.moisture_percent}%) | "
              f"Temp: {snapshot.temperature}°C | Humidity: {snapshot.humidity}% | "
              f"Pump: {snapshot.pump_state.value} | Rain: {snapshot.rain_status.value}")
        for alert in sorted(store.state.alerts, key=lambda a: a.value):
            print(f"   ⚠️  {describe_alert(alert)}")
    print()

    transitions = []
    disconnect_start = None

    def on_state(state):
        nonlocal disconnect_start
        timestamp = time.strftime('%H:%M:%S')
        connected = state.connectivity.connected
        was_connected = transitions[-1] if transitions else None
        if connected == was_connected:
            return
        transitions.append(connected)

        if connected:
            if disconnect_start:
                downtime = time.time() - disconnect_start
                print(f"\n[{timestamp}] 🟢 RECONNECTED after {downtime:.1f} seconds")
                disconnect_start = None
            else:
                print(f"\n[{timestamp}] 🟢 CONNECTED")
        else:
            disconnect_start = time.time()
            print(f"\n[{timestamp}] 🔴 DISCONNECTED: {state.connectivity.last_error}")

    store.subscribe(on_state)
    sync_loop.start()

    try:
        while running:
            time.sleep(0.5)
    finally:
        sync_loop.close()
        client.close()

        stats = sync_loop.get_stats()
        print("\n" + "=" * 70)
        print("Diagnostics Summary")
        print("=" * 70)
        print(f"Polls: {stats['polls']} | OK: {stats['successes']} | "
              f"Failed: {stats['failures']} | Skipped: {stats['skipped']}")
        print(f"Disconnections: {transitions.count(False)}")
        print("=" * 70)

    return store.state.connectivity.connected


if __name__ == '__main__':
    load_dotenv(os.path.join(os.path.dirname(__file__), '..', 'config', '.env'))
    logging.basicConfig(level=logging.WARNING)
    try:
        success = diagnose_connection(sys.argv[1] if len(sys.argv) > 1 else None)
        sys.exit(0 if success else 1)
    except Exception as e:
        print(f"\n❌ Error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)

# MoisSense Gateway - Main Orchestrator
# Starts the field node sync loop and the Flask JSON API for dashboards

import os
import logging
import signal
import time
from flask import Flask
from flask_cors import CORS
from dotenv import load_dotenv

from moissense.cloud.device_api import DeviceAPIClient
from moissense.core.command_dispatcher import CommandDispatcher
from moissense.core.models import OperatingMode
from moissense.core.state_store import DeviceStateStore
from moissense.core.sync_loop import SyncLoop
from moissense.utils.user_preferences import UserPreferencesManager, DEFAULT_CONFIG_DIR
from moissense.web.routes import web_bp

logger = logging.getLogger(__name__)


def create_app(store, dispatcher, sync_loop=None, user_prefs=None, start_time=None):
    """Build the Flask app around already-wired core components."""
    app = Flask(__name__)

    # Dashboards and the mobile app live on other origins
    CORS(app, resources={
        r"/api/*": {"origins": "*"},
        r"/status": {"origins": "*"},
    })

    app.register_blueprint(web_bp)

    app.config['STATE_STORE'] = store
    app.config['DISPATCHER'] = dispatcher
    app.config['SYNC_LOOP'] = sync_loop
    app.config['USER_PREFS'] = user_prefs
    app.config['START_TIME'] = start_time or time.time()
    return app


class MoisSenseOrchestrator:
    """
    Main orchestrator for the MoisSense gateway.
    Manages:
    - Field node API client
    - Published device state
    - Sync loop (polling)
    - Command dispatcher (pump control)
    - Flask JSON API
    """

    def __init__(self, config_dir=None):
        # Load configuration (with user preferences and env merged)
        self.user_prefs = UserPreferencesManager(config_dir=config_dir)
        self.config = self.user_prefs.get_merged_config()

        device_config = self.config['device']
        sync_config = self.config['sync']
        system_config = self.config['system']

        mode = OperatingMode.AUTO if system_config.get('auto_mode', True) else OperatingMode.MANUAL

        # Components
        self.client = DeviceAPIClient(
            base_url=device_config['api_url'],
            timeout=float(device_config['request_timeout'])
        )
        self.store = DeviceStateStore(mode=mode)
        self.sync_loop = SyncLoop(self.client, self.store, interval=float(sync_config['poll_interval']))
        self.dispatcher = CommandDispatcher(self.client, self.store)

        self.start_time = time.time()
        self.app = create_app(
            self.store,
            self.dispatcher,
            sync_loop=self.sync_loop,
            user_prefs=self.user_prefs,
            start_time=self.start_time
        )

        # Log connectivity transitions only, not every tick
        self._last_connected = None
        self.store.subscribe(self._on_state_change)

        logger.info(f"[MAIN] Orchestrator ready (node: {self.client.base_url}, mode: {mode.value})")

    def _on_state_change(self, state):
        connected = state.connectivity.connected
        if connected == self._last_connected:
            return
        self._last_connected = connected

        if connected:
            logger.info("[MAIN] ✅ Field node online")
        else:
            logger.warning(f"[MAIN] ⚠️ Field node offline: {state.connectivity.last_error}")

    def start(self, host=None, port=None, debug=False):
        """Start polling and serve the API (blocks until shutdown)."""
        web_config = self.config['web']
        host = host or web_config['host']
        port = int(port or web_config['port'])

        try:
            self.sync_loop.start()
            logger.info(f"[WEB] Starting Flask server on {host}:{port}")
            # Start Flask (blocks here)
            self.app.run(host=host, port=port, debug=debug, use_reloader=False)
        except KeyboardInterrupt:
            logger.info("[MAIN] Shutting down...")
        finally:
            self.shutdown()

    def shutdown(self):
        """Graceful shutdown."""
        logger.info("[MAIN] Shutting down MoisSense gateway...")
        self.sync_loop.close()
        self.client.close()
        logger.info("[MAIN] Goodbye!")


def configure_logging(level_name):
    logging.basicConfig(
        level=getattr(logging, str(level_name).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _handle_sigterm(signum, frame):
    raise KeyboardInterrupt


def main():
    """Entry point."""
    config_dir = os.getenv('MOISSENSE_CONFIG_DIR', DEFAULT_CONFIG_DIR)
    load_dotenv(os.path.join(config_dir, '.env'))
    configure_logging(os.getenv('LOG_LEVEL', 'INFO'))

    orchestrator = MoisSenseOrchestrator(config_dir=config_dir)
    logging.getLogger().setLevel(str(orchestrator.config['system'].get('log_level', 'INFO')).upper())

    # systemd stops the service with SIGTERM
    signal.signal(signal.SIGTERM, _handle_sigterm)

    orchestrator.start()


if __name__ == '__main__':
    main()

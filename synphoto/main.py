#!/usr/bin/env python3
# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
SynPhoto - Main Application.
Wires the Synology client, image cache, metadata store, slideshow controller
and background downloader together and runs until interrupted.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Optional

from .logs import setup_file_logging, setup_logging

logger = logging.getLogger(__name__)


class SynPhoto:
    """Main SynPhoto application."""

    def __init__(self, config_path: Optional[str] = None, log_level: Optional[str] = None):
        """
        Initialize SynPhoto.

        Args:
            config_path: Path to configuration file.
            log_level: Overrides the configured log level when given.
        """
        self.config_path = config_path
        self.log_level = log_level
        self.config = None
        self.provider = None
        self.cache = None
        self.metadata_store = None
        self.controller = None
        self.downloader = None

        self._shutdown_event = threading.Event()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.stop()

    def _load_config(self) -> bool:
        """Load and validate configuration."""
        from .config import load_config, validate_config

        try:
            self.config = load_config(self.config_path)
        except Exception as e:
            logger.error(f"Failed to load config: {e}")
            return False

        if self.log_level:
            self.config.logging.level = self.log_level
        setup_logging(self.config.logging.level)

        errors = validate_config(self.config)
        for error in errors:
            logger.warning(f"Config: {error}")

        return True

    def _init_components(self) -> bool:
        """Build the provider, cache, metadata store and controller."""
        from .background_downloader import BackgroundDownloader
        from .geocoding import ReverseGeocoder
        from .image_cache import ImageCache
        from .image_list import ImageListManager, ShownTracker
        from .metadata import MetadataExtractor
        from .metadata_store import MetadataDatabase, MetadataStore
        from .provider import ProviderError
        from .slideshow import SlideshowController
        from .synology import SynologyPhotosClient

        self.provider = SynologyPhotosClient(self.config.synology)
        try:
            if not self.provider.authenticate():
                logger.error("Could not authenticate with Synology Photos")
                return False
        except ProviderError as e:
            logger.error(f"Could not authenticate with Synology Photos: {e}")
            return False

        if self.config.cache.enabled:
            self.cache = ImageCache(self.config.cache)
            if not self.cache.initialize():
                logger.warning("Image cache unavailable, continuing without it")
                self.cache = None

        meta = self.config.metadata
        geocoder = None
        if meta.geocoding_enabled:
            geocoder = ReverseGeocoder(
                user_agent=meta.geocoding_user_agent,
                timeout=meta.geocoding_timeout_seconds,
                min_interval=meta.geocoding_min_interval_seconds,
            )
        self.metadata_store = MetadataStore(
            MetadataDatabase(meta.database_path),
            MetadataExtractor(self.provider),
            geocoder,
        )

        self.controller = SlideshowController(
            self.config,
            self.provider,
            self._on_display,
            list_manager=ImageListManager(ShownTracker(self.config.slideshow.shown_tracker_path)),
            cache=self.cache,
            metadata_store=self.metadata_store,
        )
        self.downloader = BackgroundDownloader(
            self.config, self.provider, self.cache, self.metadata_store
        )
        return True

    def _on_display(self, payload) -> None:
        """Display callback: log each served photo."""
        size = len(payload.data) if payload.data else 0
        line = f"Displaying photo {payload.index}/{payload.total}: {os.path.basename(payload.path)} ({size} bytes)"
        metadata = payload.metadata
        if metadata is not None:
            details = [d for d in (metadata.capture_date, metadata.short_address or metadata.location) if d]
            if details:
                line += f" [{' | '.join(details)}]"
        if payload.exif is not None and payload.exif.camera:
            line += f" ({payload.exif.camera})"
        logger.info(line)

    def run(self, once: bool = False) -> int:
        """
        Run the application until shutdown.

        Args:
            once: Serve a single photo and exit.

        Returns:
            Exit code (0 for success).
        """
        if not self._load_config():
            return 1

        logger.info("Starting SynPhoto...")

        log_dir = self.config.logging.directory or os.environ.get('SYNPHOTO_LOG_DIR')
        if log_dir:
            try:
                log_file = setup_file_logging(log_dir)
                logger.info(f"Logging to {log_file}")
            except Exception as e:
                logger.warning(f"Could not set up file logging: {e}")

        try:
            if not self._init_components():
                return 1

            if once:
                self.controller.gather_image_list(0, check_for_new_first=True)
                payload = self.controller.get_next_image()
                if payload is None:
                    logger.error("No photo available")
                    return 1
                self.controller.stop()
                return 0

            self.controller.start()
            self.downloader.start()
            logger.info("SynPhoto started successfully")

            self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Main loop error: {e}")
            return 1
        finally:
            self._cleanup()

        return 0

    def stop(self) -> None:
        """Stop the application."""
        logger.info("Stopping SynPhoto...")
        self._shutdown_event.set()

    def _cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up...")

        if self.downloader:
            try:
                self.downloader.stop(timeout=5)
            except Exception as e:
                logger.error(f"Error stopping background downloader: {e}")

        if self.controller:
            try:
                self.controller.stop()
            except Exception as e:
                logger.error(f"Error stopping slideshow: {e}")

        if self.provider:
            try:
                self.provider.logout()
            except Exception as e:
                logger.error(f"Error logging out: {e}")

        logger.info("SynPhoto stopped")


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="SynPhoto - Synology Photos slideshow",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--log-level',
        choices=['error', 'warn', 'info', 'debug'],
        help='Override the configured log level'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Serve a single photo and exit'
    )

    parser.add_argument(
        '--version',
        action='store_true',
        help='Show version and exit'
    )

    args = parser.parse_args(argv)

    if args.version:
        from . import __version__
        print(f"SynPhoto {__version__}")
        return 0

    setup_logging(args.log_level or "info")

    app = SynPhoto(config_path=args.config, log_level=args.log_level)
    app.install_signal_handlers()
    return app.run(once=args.once)


if __name__ == "__main__":
    sys.exit(main())

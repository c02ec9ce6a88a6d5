"""
Agent Engine — Background Scheduler
====================================
Background scheduler for the periodic agent jobs.
"""

import time
import logging
import threading

from config import Config
from agent_engine.db import log_event

logger = logging.getLogger(__name__)


class AgentScheduler:
    """Background scheduler for heartbeat and learning maintenance jobs."""

    _running = False
    _thread = None

    @staticmethod
    def start():
        """Start the background agent scheduler."""
        if AgentScheduler._running:
            return

        AgentScheduler._running = True
        AgentScheduler._thread = threading.Thread(
            target=AgentScheduler._run_loop, daemon=True
        )
        AgentScheduler._thread.start()
        log_event('scheduler', 'started')
        logger.info("Agent scheduler started")

    @staticmethod
    def stop():
        """Stop the scheduler."""
        AgentScheduler._running = False
        log_event('scheduler', 'stopped')

    @staticmethod
    def _run_loop():
        """Main scheduler loop with 2 cadences."""
        heartbeat_interval = Config.HEARTBEAT_INTERVAL_MINUTES * 60
        last_heartbeat = 0
        last_daily = 0

        while AgentScheduler._running:
            now = time.time()

            try:
                # Heartbeat sweep (includes outcome measurement)
                if now - last_heartbeat >= heartbeat_interval:
                    logger.info("Running heartbeat")
                    AgentScheduler._run_heartbeat()
                    last_heartbeat = now

                # Daily tasks
                if now - last_daily >= 86400:
                    logger.info("Running daily agent tasks")
                    AgentScheduler._run_daily()
                    last_daily = now

            except Exception as e:
                logger.error(f"Scheduler error: {e}")
                log_event('scheduler', 'error', str(e), 'error')

            time.sleep(60)  # Check every minute

    @staticmethod
    def _run_heartbeat():
        """Every HEARTBEAT_INTERVAL_MINUTES: global heartbeat sweep."""
        from agent_engine.heartbeat import HeartbeatScanner

        try:
            summary = HeartbeatScanner.run()
            if summary['errors']:
                logger.warning(f"Heartbeat finished with {len(summary['errors'])} errors")
        except Exception as e:
            logger.error(f"Heartbeat failed: {e}")

        log_event('scheduler', 'heartbeat_complete')

    @staticmethod
    def _run_daily():
        """Daily: rule decay, correction pattern detection, retention cleanup."""
        from agent_engine.knowledge_store import KnowledgeStore
        from agent_engine.learning import LearningPipeline, PATTERN_MIN_CORRECTIONS

        try:
            decayed = KnowledgeStore.decay_stale_rules()
            logger.info(f"Decayed {decayed} stale rules")
        except Exception as e:
            logger.error(f"Rule decay failed: {e}")

        try:
            for user_id in KnowledgeStore.users_with_unmatched_corrections(PATTERN_MIN_CORRECTIONS):
                LearningPipeline.detect_correction_patterns(user_id)
        except Exception as e:
            logger.error(f"Correction pattern detection failed: {e}")

        try:
            KnowledgeStore.cleanup_old_learning_data()
        except Exception as e:
            logger.error(f"Learning data cleanup failed: {e}")

        log_event('scheduler', 'daily_complete')

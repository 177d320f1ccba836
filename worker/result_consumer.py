"""
Transcode result consumer.

Reads worker result records from the results stream (consumer group
REDIS_CONSUMER_GROUP) and applies them through the TranscodeOrchestrator.

A record is acknowledged once it has been applied, or once it has been found
unparseable. A record whose handling failed stays pending in the group and is
retried; after RESULT_MAX_DELIVERIES deliveries it is moved to the dead-letter
stream so one bad record cannot hold up the rest.
"""

import asyncio
import logging
import signal
import socket
from typing import Optional

from api.database import database
from api.job_outcomes import parse_outcome
from api.job_queue import ResultStream
from api.metrics import REDIS_OPERATIONS_TOTAL
from api.orchestrator import TranscodeOrchestrator
from config import RESULT_MAX_DELIVERIES

logger = logging.getLogger(__name__)


class ResultConsumer:
    """Applies transcode worker results to media state."""

    def __init__(
        self,
        orchestrator: Optional[TranscodeOrchestrator] = None,
        stream: Optional[ResultStream] = None,
        consumer_name: Optional[str] = None,
        batch_size: int = 10,
        idle_interval: float = 1.0,
        max_deliveries: int = RESULT_MAX_DELIVERIES,
    ):
        """
        Initialize the result consumer.

        Args:
            orchestrator: Orchestrator applying outcomes
            stream: Results stream reader (one per consumer name)
            consumer_name: Name within the consumer group (default: hostname)
            batch_size: Records read per call
            idle_interval: Seconds to back off when Redis is unavailable or a
                record failed to apply
            max_deliveries: Deliveries of a failing record before it is dead-lettered
        """
        self.orchestrator = orchestrator or TranscodeOrchestrator()
        self.stream = stream or ResultStream(consumer_name or f"results-{socket.gethostname()}")
        self.batch_size = batch_size
        self.idle_interval = idle_interval
        self.max_deliveries = max_deliveries
        self.failed = 0
        self.running = False

    async def process_batch(self) -> int:
        """
        Read and apply one batch of result records.

        A record that fails to apply stays pending and is retried on the next
        pass over the pending list. Once it has been delivered
        RESULT_MAX_DELIVERIES times it is moved to the dead-letter stream.

        Returns:
            Number of records acknowledged
        """
        records = await self.stream.read(self.batch_size)
        handled = 0
        self.failed = 0
        for message_id, data in records:
            if not data:
                # Trimmed from the stream while still pending
                await self.stream.acknowledge(message_id)
                handled += 1
                continue

            try:
                outcome = parse_outcome(data)
            except ValueError as e:
                logger.error(f"Discarding malformed result record {message_id}: {e}")
                REDIS_OPERATIONS_TOTAL.labels(operation="result_parse", result="failed").inc()
                await self.stream.acknowledge(message_id)
                handled += 1
                continue

            try:
                await self.orchestrator.apply_outcome(outcome)
            except Exception as e:
                if await self._give_up(message_id, data, e):
                    handled += 1
                continue

            await self.stream.acknowledge(message_id)
            handled += 1

        if self.failed:
            self.stream.rewind()
        return handled

    async def _give_up(self, message_id: str, data: dict, error: Exception) -> bool:
        """Dead-letter a record that failed too often. Returns True if it was removed."""
        deliveries = await self.stream.delivery_count(message_id)
        if deliveries >= self.max_deliveries:
            logger.error(f"Result record {message_id} failed {deliveries} times, moving to dead letters: {error}")
            if await self.stream.dead_letter(message_id, data, str(error)):
                return True
        else:
            logger.warning(f"Failed to apply result record {message_id} (delivery {deliveries}): {error}")
        REDIS_OPERATIONS_TOTAL.labels(operation="result_apply", result="failed").inc()
        self.failed += 1
        return False

    async def start(self) -> None:
        """Start the consumer main loop."""
        logger.info("Starting transcode result consumer")
        self.running = True

        while self.running:
            if await self.stream.initialize():
                break
            logger.warning("Results stream unavailable, retrying")
            await asyncio.sleep(self.idle_interval)

        while self.running:
            try:
                handled = await self.process_batch()
                if not handled or self.failed:
                    # read() blocks while the stream is empty; this paces outages and retries
                    await asyncio.sleep(self.idle_interval)
            except asyncio.CancelledError:
                logger.info("Result consumer cancelled")
                break
            except Exception as e:
                logger.exception(f"Error in result consumer loop: {e}")
                await asyncio.sleep(self.idle_interval)

    def stop(self) -> None:
        """Signal the consumer to stop after the current batch."""
        logger.info("Stopping transcode result consumer")
        self.running = False


async def run_result_consumer(consumer_name: Optional[str] = None) -> None:
    """Run the result consumer until SIGINT / SIGTERM."""
    await database.connect()
    consumer = ResultConsumer(consumer_name=consumer_name)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    try:
        await consumer.start()
    finally:
        consumer.stop()
        await database.disconnect()

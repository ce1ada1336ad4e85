"""
Consumer Pipeline — one configurable consumer instead of per-feature variants.

    LongPollConsumer ──▶ SerialQuestionQueue (seen-id filter) ──▶ QuestionProcessor
                                                                        │
                         broker /v1/answers ◀── AnswerAcknowledger ◀────┘
                                               (normalize + hash)

Two long-lived tasks: the poll loop and the queue worker. The poll loop
only enqueues; the worker never polls.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import ConsumerConfig, Settings, get_settings
from consumer.answers import AckStatus, AnswerAcknowledger
from consumer.client import BrokerClient
from consumer.poller import LongPollConsumer, PollBackoff
from consumer.processors import FastPathProcessor, QuestionProcessor, create_processor
from job_queue.serial_queue import SeenIds, SerialQuestionQueue
from models.schemas import InboundQuestion

logger = structlog.get_logger()


class ConsumerPipeline:
    """
    Usage:
        pipeline = ConsumerPipeline.from_settings(get_settings())
        await pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        client: BrokerClient,
        processor: QuestionProcessor,
        config: ConsumerConfig = None,
        fast_path: Optional[QuestionProcessor] = None,
    ):
        self.config = config or ConsumerConfig()
        self.client = client
        self.processor = FastPathProcessor(processor, fast_path) if fast_path else processor
        self.acknowledger = AnswerAcknowledger(client, max_entries=self.config.ack_cache_max)
        self.queue = SerialQuestionQueue(
            self.handle_question,
            seen=SeenIds(self.config.seen_ids_max, self.config.seen_ids_retention),
            settle_delay=self.config.settle_delay,
        )
        self.poller = LongPollConsumer(
            client,
            enqueue_fn=self.queue.enqueue,
            backoff=PollBackoff(
                floor=self.config.backoff_floor,
                ceiling=self.config.backoff_max,
                idle_multiplier=self.config.idle_multiplier,
                error_multiplier=self.config.error_multiplier,
            ),
            on_cursor=self.queue.seen.prune_below,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings = None,
        processor: QuestionProcessor = None,
        fast_path: QuestionProcessor = None,
    ) -> ConsumerPipeline:
        settings = settings or get_settings()
        config = settings.consumer
        client = BrokerClient(config, long_poll_timeout=settings.broker.long_poll_timeout)
        return cls(
            client,
            processor or create_processor(config.processor),
            config=config,
            fast_path=fast_path,
        )

    async def handle_question(self, question: InboundQuestion) -> AckStatus:
        """Process one question and acknowledge its answer. Failures propagate to the queue."""
        raw_answer = await self.processor.process(question)
        status = await self.acknowledger.acknowledge(question.id, raw_answer)
        logger.info("question_handled", question_id=question.key or None, ack=status.value)
        return status

    async def start(self) -> None:
        await self.queue.start_background()
        await self.poller.start()
        logger.info("consumer_pipeline_started",
                    broker_url=self.config.broker_url,
                    processor=self.processor.name)

    async def stop(self) -> None:
        await self.poller.stop()
        await self.queue.stop()
        await self.client.close()
        logger.info("consumer_pipeline_stopped")

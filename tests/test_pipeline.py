"""
End-to-end tests: a real consumer pipeline polling the in-process broker app.
"""
import asyncio
import time
import httpx
import pytest

from consumer.answers import AckStatus
from consumer.client import BrokerClient
from consumer.pipeline import ConsumerPipeline
from consumer.processors import EchoProcessor, QuestionProcessor
from models.schemas import InboundQuestion
from tests.conftest import LONG_POLL_TIMEOUT


async def _until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition never met"
        await asyncio.sleep(0.01)


@pytest.fixture
def pipeline(app, consumer_config):
    client = BrokerClient(
        consumer_config,
        long_poll_timeout=LONG_POLL_TIMEOUT,
        transport=httpx.ASGITransport(app=app),
    )
    return ConsumerPipeline(client, EchoProcessor(), config=consumer_config)


class TestConsumerPipeline:
    @pytest.mark.asyncio
    async def test_question_is_answered_once(self, broker, pipeline):
        broker.submit_question("ping")
        await pipeline.start()
        try:
            await _until(lambda: len(broker.answers) == 1)
            # let the consumer come back around for another idle poll
            await asyncio.sleep(LONG_POLL_TIMEOUT + 0.1)
        finally:
            await pipeline.stop()

        answers = broker.list_answers()
        assert len(answers) == 1
        assert answers[0].question_id == 1
        assert answers[0].answer == "Echo: ping"
        assert pipeline.poller.cursor == 1

    @pytest.mark.asyncio
    async def test_question_posted_while_polling(self, broker, pipeline):
        await pipeline.start()
        try:
            await _until(lambda: broker.waiters.pending == 1)
            broker.submit_question("late")
            broker.submit_question("later")
            await _until(lambda: len(broker.answers) == 2)
        finally:
            await pipeline.stop()

        assert [a.answer for a in broker.list_answers()] == ["Echo: late", "Echo: later"]

    @pytest.mark.asyncio
    async def test_redelivered_question_is_skipped(self, broker, pipeline):
        broker.submit_question("once")
        question = InboundQuestion.from_raw(broker.list_questions()[0].to_wire())

        assert pipeline.queue.enqueue(question) is True
        assert pipeline.queue.enqueue(question) is False

    @pytest.mark.asyncio
    async def test_same_answer_acknowledged_once(self, broker, pipeline):
        question = InboundQuestion.from_raw({"id": 5, "text": "same"})
        assert await pipeline.handle_question(question) is AckStatus.SENT
        assert await pipeline.handle_question(question) is AckStatus.DUPLICATE
        await pipeline.client.close()
        assert len(broker.answers) == 1

    @pytest.mark.asyncio
    async def test_processor_failure_keeps_pipeline_alive(self, broker, app, consumer_config):
        class Flaky(QuestionProcessor):
            async def process(self, question):
                if question.text == "boom":
                    raise RuntimeError("automation failed")
                return "fine"

        client = BrokerClient(consumer_config, long_poll_timeout=LONG_POLL_TIMEOUT,
                              transport=httpx.ASGITransport(app=app))
        pipeline = ConsumerPipeline(client, Flaky(), config=consumer_config)

        broker.submit_question("boom")
        broker.submit_question("ok")
        await pipeline.start()
        try:
            await _until(lambda: len(broker.answers) == 1)
        finally:
            await pipeline.stop()

        assert broker.list_answers()[0].question_id == 2
        assert pipeline.queue.stats["failed"] == 1

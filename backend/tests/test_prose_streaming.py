import asyncio
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp())
os.environ.setdefault("API_KEY_ENCRYPTION_SECRET", "smoke-test-secret-0123456789abcdef0123")
os.environ.setdefault("VERIFY_API_KEYS_REMOTELY", "false")
os.environ.setdefault("ENABLE_HTTP_LOGGING", "false")

from api.main import stream_chat_text_async, stream_tracked_prose
from core.llm_client import LLMUsage, create_llm_client
from models import UsageStatus
from services.provider_resolution import UserProvider
from storage import StoryStore

MODEL = "claude-sonnet-4-20250514"


class SlowVendor:
    """Blocking vendor stream that reports usage only for the chunks it produced."""

    def __init__(self, chunks: int = 50, delay: float = 0.02):
        self.chunks = chunks
        self.delay = delay
        self.pulled = 0
        self.closed = threading.Event()

    def chat_stream_text(self, messages, **kwargs):
        usage = kwargs["usage"]
        try:
            for index in range(self.chunks):
                time.sleep(self.delay)
                self.pulled += 1
                yield f"word{index} "
        finally:
            usage.input_tokens = 500
            usage.output_tokens = self.pulled
            self.closed.set()


class TestStreamBridge(unittest.TestCase):
    def test_closing_early_stops_the_vendor_stream(self):
        vendor = SlowVendor()

        async def read_one():
            chunks = stream_chat_text_async(
                vendor,
                [{"role": "user", "content": "Go"}],
                system=None,
                model=MODEL,
                max_tokens=100,
                usage=LLMUsage(),
            )
            first = await chunks.__anext__()
            await chunks.aclose()
            return first

        first = asyncio.run(read_one())
        self.assertEqual(first, "word0 ")
        self.assertTrue(vendor.closed.is_set())
        pulled_at_close = vendor.pulled
        time.sleep(0.2)
        self.assertEqual(vendor.pulled, pulled_at_close)
        self.assertLess(vendor.pulled, vendor.chunks)

    def test_full_stream_is_forwarded(self):
        vendor = SlowVendor(chunks=3, delay=0)
        usage = LLMUsage()

        async def read_all():
            return [
                delta
                async for delta in stream_chat_text_async(
                    vendor, [], system=None, model=MODEL, max_tokens=100, usage=usage
                )
            ]

        self.assertEqual(asyncio.run(read_all()), ["word0 ", "word1 ", "word2 "])
        self.assertEqual(usage.output_tokens, 3)


class TestTrackedProseDisconnect(unittest.TestCase):
    def setUp(self):
        self.store = StoryStore(str(Path(tempfile.mkdtemp()) / "test.db"))
        self.vendor = SlowVendor()
        self.provider = UserProvider(client=self.vendor, provider="anthropic", default_model_id=MODEL)

    def test_cancelled_row_carries_usage_of_the_stopped_stream(self):
        async def read_one_then_disconnect():
            response = await stream_tracked_prose(
                self.store,
                "u1",
                self.provider,
                MODEL,
                [{"role": "user", "content": "Go"}],
                None,
                endpoint="generate-scene",
                max_tokens=100,
            )
            body = response.body_iterator
            first = await body.__anext__()
            await body.aclose()
            return first

        first = asyncio.run(read_one_then_disconnect())
        self.assertEqual(first, "word0 ")
        self.assertTrue(self.vendor.closed.is_set())
        self.assertLess(self.vendor.pulled, self.vendor.chunks)

        records = self.store.list_usage_records("u1")
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].status, UsageStatus.CANCELLED)
        self.assertEqual(records[0].input_tokens, 500)
        self.assertEqual(records[0].output_tokens, self.vendor.pulled)
        self.assertEqual(self.store.ensure_profile("u1").words_used_this_month, 0)


class TestClientStreamClose(unittest.TestCase):
    def test_anthropic_stream_closed_early_estimates_output(self):
        llm = create_llm_client("anthropic", "sk-ant-test", MODEL)
        vendor = MagicMock()
        stream = vendor.messages.stream.return_value.__enter__.return_value
        stream.text_stream = iter(["abcdefghijkl", "mnop"])
        llm._client = vendor

        usage = LLMUsage()
        deltas = llm.chat_stream_text([{"role": "user", "content": "Go"}], usage=usage)
        self.assertEqual(next(deltas), "abcdefghijkl")
        deltas.close()

        vendor.messages.stream.return_value.__exit__.assert_called_once()
        stream.get_final_message.assert_not_called()
        self.assertEqual(usage.output_tokens, 3)

    def test_openai_response_is_closed(self):
        llm = create_llm_client("openai", "sk-test", "gpt-4o")
        vendor = MagicMock()
        chunk = MagicMock(usage=None)
        chunk.choices = [MagicMock()]
        chunk.choices[0].delta.content = "Hello"
        vendor.chat.completions.create.return_value.__enter__.return_value = iter([chunk, chunk])
        llm._client = vendor

        deltas = llm.chat_stream_text([{"role": "user", "content": "Go"}], usage=LLMUsage())
        self.assertEqual(next(deltas), "Hello")
        deltas.close()
        vendor.chat.completions.create.return_value.__exit__.assert_called_once()


if __name__ == "__main__":
    unittest.main()

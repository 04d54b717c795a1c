"""
Request Gate Tests

Tests:
1. Pre-check against the estimate, debit of ACTUAL usage afterwards
2. Refusal before the generator is called
3. Post-hoc shortfall recording (balance drained or storage down)
4. Generator implementations and backend selection
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from ai_billing import generation
from ai_billing.errors import InsufficientTokens, ValidationError
from ai_billing.generation import OpenAIGenerator, SimulatedGenerator, build_generator, resolve_model
from ai_billing.guard import RequestGate, estimate_tokens
from ai_billing.models import GenerationResult


class FakeGenerator:
    """Reports a fixed usage and records calls."""

    def __init__(self, total_tokens=350, job_id="job-1", before_return=None):
        self.total_tokens = total_tokens
        self.job_id = job_id
        self.before_return = before_return
        self.calls = []

    async def generate(self, prompt, model):
        self.calls.append((prompt, model))
        if self.before_return:
            await self.before_return()
        return GenerationResult(
            job_id=self.job_id,
            model=model,
            content=f"echo: {prompt}",
            prompt_tokens=100,
            completion_tokens=self.total_tokens - 100,
            total_tokens=self.total_tokens
        )


class TestEstimate:
    @pytest.mark.parametrize("prompt,expected", [
        ("a", 2),
        ("abcd", 2),
        ("abcde", 4),
        ("x" * 400, 200),
    ])
    def test_estimate_tokens(self, prompt, expected):
        assert estimate_tokens(prompt) == expected

    def test_resolve_model(self):
        assert resolve_model(None) == "gpt-4o"
        assert resolve_model("gemini-pro") == "gemini-pro"
        with pytest.raises(ValidationError):
            resolve_model("gpt-9")


class TestRequestGate:
    @pytest.mark.asyncio
    async def test_charges_actual_usage_not_estimate(self, ledger, mongo_db, seeded):
        seeded(total=1000)
        generator = FakeGenerator(total_tokens=350)
        gate = RequestGate(ledger, generator)

        outcome = await gate.generate("user-1", "build me a landing page", estimated_tokens=400)

        assert outcome.estimated_tokens == 400
        assert outcome.tokens_charged == 350
        assert outcome.billing_shortfall is False
        assert outcome.transaction_id == "prompt:job-1"
        assert outcome.token_usage.tokens_remaining == 650
        assert outcome.result.content == "echo: build me a landing page"

        entry = mongo_db.raw.token_transactions.find_one({"id": "prompt:job-1"})
        assert entry["delta"] == -350
        assert entry["related_model_id"] == "gpt-4o"
        assert entry["related_prompt_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_insufficient_balance_refused_before_generation(self, ledger, seeded):
        seeded(total=1000, used=900)
        generator = FakeGenerator()
        gate = RequestGate(ledger, generator)

        with pytest.raises(InsufficientTokens) as exc:
            await gate.generate("user-1", "hello", estimated_tokens=400)

        assert exc.value.status_code == 402
        assert exc.value.required == 400
        assert exc.value.remaining == 100
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_user_without_record_refused(self, ledger):
        generator = FakeGenerator()
        with pytest.raises(InsufficientTokens) as exc:
            await RequestGate(ledger, generator).generate("nobody", "hello")

        assert exc.value.remaining == 0
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_unknown_model_rejected_before_generation(self, ledger, seeded):
        seeded(total=1000)
        generator = FakeGenerator()

        with pytest.raises(ValidationError):
            await RequestGate(ledger, generator).generate("user-1", "hello", model="gpt-9")
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_default_estimator_used_when_no_estimate(self, ledger, seeded):
        seeded(total=1000)
        seen = []

        def estimator(prompt):
            seen.append(prompt)
            return 10

        gate = RequestGate(ledger, FakeGenerator(total_tokens=120), estimator=estimator)
        outcome = await gate.generate("user-1", "hello")

        assert seen == ["hello"]
        assert outcome.estimated_tokens == 10
        assert outcome.tokens_charged == 120

    @pytest.mark.asyncio
    async def test_balance_covering_doubled_estimate_is_admitted(self, ledger, seeded):
        seeded(total=1000, used=750)

        gate = RequestGate(ledger, FakeGenerator(total_tokens=120))
        outcome = await gate.generate("user-1", "x" * 400)

        assert outcome.estimated_tokens == 200
        assert outcome.tokens_charged == 120

    @pytest.mark.asyncio
    async def test_shortfall_when_balance_drained_during_generation(self, ledger, mongo_db, seeded):
        seeded(total=1000)

        async def drain():
            await ledger.deduct_tokens("user-1", 900, "prompt:other-request")

        gate = RequestGate(ledger, FakeGenerator(total_tokens=350, before_return=drain))
        outcome = await gate.generate("user-1", "hello", estimated_tokens=400)

        assert outcome.billing_shortfall is True
        assert outcome.tokens_charged == 0
        assert outcome.result.content == "echo: hello"
        assert outcome.token_usage.tokens_remaining == 100

        shortfall = mongo_db.raw.token_shortfalls.find_one({"transaction_id": "prompt:job-1"})
        assert shortfall["tokens"] == 350
        assert shortfall["reason"] == "insufficient_balance"
        assert shortfall["resolved"] is False
        assert mongo_db.raw.token_transactions.find_one({"id": "prompt:job-1"}) is None

    @pytest.mark.asyncio
    async def test_storage_outage_after_generation_returns_result(self, ledger, mongo_db, seeded):
        seeded(total=1000)

        async def outage():
            mongo_db.fail("token_usage", "find_one_and_update")

        gate = RequestGate(ledger, FakeGenerator(total_tokens=350, before_return=outage))
        outcome = await gate.generate("user-1", "hello", estimated_tokens=400)

        assert outcome.billing_shortfall is True
        assert outcome.result.job_id == "job-1"
        shortfall = mongo_db.raw.token_shortfalls.find_one({"transaction_id": "prompt:job-1"})
        assert shortfall["reason"] == "storage_unavailable"

    @pytest.mark.asyncio
    async def test_underestimates_never_overdraw(self, ledger, mongo_db, seeded):
        seeded(total=1000)
        outcomes = []
        for i in range(4):
            gate = RequestGate(ledger, FakeGenerator(total_tokens=300, job_id=f"job-{i}"))
            outcomes.append(await gate.generate("user-1", "hi", estimated_tokens=1))

        charged = sum(o.tokens_charged for o in outcomes)
        usage = mongo_db.raw.token_usage.find_one({"user_id": "user-1"})
        assert charged == 900
        assert usage["tokens_used"] == 900
        assert usage["tokens_remaining"] == 100
        assert outcomes[-1].billing_shortfall is True


class TestGenerators:
    @pytest.mark.asyncio
    async def test_simulated_generator_counts_tokens(self):
        result = await SimulatedGenerator().generate("abcdefgh", "gpt-4o")

        assert result.content == "Generated response for: abcdefgh"
        assert result.prompt_tokens == 2
        assert result.total_tokens == result.prompt_tokens + result.completion_tokens

    def test_simulated_generator_refused_in_production(self, monkeypatch):
        monkeypatch.setattr("utils.environment.ENVIRONMENT", "production")
        with pytest.raises(RuntimeError):
            SimulatedGenerator()

    @pytest.mark.asyncio
    async def test_openai_generator_reads_reported_usage(self):
        response = SimpleNamespace(
            id="chatcmpl-1",
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=30, total_tokens=42),
            choices=[SimpleNamespace(message=SimpleNamespace(content="<html></html>"))]
        )
        create = AsyncMock(return_value=response)
        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

        result = await OpenAIGenerator(client=client).generate("landing page", "gpt-4o")

        assert result.job_id == "chatcmpl-1"
        assert result.total_tokens == 42
        assert result.content == "<html></html>"
        assert create.call_args.kwargs["model"] == "gpt-4o"
        assert create.call_args.kwargs["messages"][-1] == {"role": "user", "content": "landing page"}

    def test_backend_selection(self, monkeypatch):
        monkeypatch.setenv("GENERATION_BACKEND", "simulated")
        assert isinstance(build_generator(), SimulatedGenerator)

        monkeypatch.setenv("GENERATION_BACKEND", "openai")
        assert isinstance(build_generator(), OpenAIGenerator)

    def test_get_generator_is_cached(self, monkeypatch):
        monkeypatch.setattr(generation, "_generator", None)
        monkeypatch.setenv("GENERATION_BACKEND", "simulated")
        assert generation.get_generator() is generation.get_generator()

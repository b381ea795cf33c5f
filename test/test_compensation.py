"""Unit tests for the CompensationEngine class."""

import asyncio
import pytest
from unittest.mock import AsyncMock
from eth_abi import decode

from conftest import ETHEREUM_GATEWAY, SENDER, make_client, make_event
from gmp_relayer.command_executor import CommandExecutor
from gmp_relayer.command_translator import CommandTranslator
from gmp_relayer.compensation import CompensationEngine, new_compensation_id
from gmp_relayer.config import ExecutionConfig, RetryConfig
from gmp_relayer.errors import CompensationError
from gmp_relayer.models import CommandType, CompensationState, EventKind, failure_key
from gmp_relayer.retry_processor import RetryProcessor
from gmp_relayer.utils.state_store import JsonFileStateStore


@pytest.fixture
def executor(clients, signer, state_store):
    return CommandExecutor(clients, signer, state_store, ExecutionConfig(), max_retries=3)


@pytest.fixture
def engine(state_store, executor):
    engine = CompensationEngine(state_store, executor)
    executor.on_exhausted = engine.compensate
    return engine


def fail_on(client):
    client.wait_for_receipt = AsyncMock(return_value={'status': 0, 'gasUsed': 1})


def refunds_sent(client):
    """Decode every MINT_TOKEN batch sent to a client's gateway."""
    refunds = []
    for call in client.build_execute_transaction.call_args_list:
        for command_type, data in call.args[1]:
            if command_type == CommandType.MINT_TOKEN:
                refunds.append(decode(['address', 'uint256', 'string'], data))
    return refunds


class TestCompensationEngine:
    """Test suite for CompensationEngine."""

    def test_compensation_ids_are_fresh(self):
        """Test every compensation gets a new bytes32 id."""
        first, second = new_compensation_id(), new_compensation_id()

        assert first != second
        assert len(first) == 66

    @pytest.mark.asyncio
    async def test_refund_after_retries_exhausted(self, engine, executor, clients, state_store):
        """Test a transfer failing three times is refunded once on the source chain."""
        event = make_event(amount=1000, symbol="USDC")
        command = CommandTranslator.build_command(event)
        fail_on(clients["bsc"])

        for _ in range(3):
            await executor.execute("bsc", command.command_id, [command], event)

        refunds = refunds_sent(clients["ethereum"])
        assert len(refunds) == 1
        recipient, amount, symbol = refunds[0]
        assert recipient.lower() == SENDER.lower()
        assert amount == 1000
        assert symbol == "USDC"

        record = await state_store.get_failure(failure_key(command.command_id, "bsc"))
        assert record.state is CompensationState.COMPENSATED
        assert record.compensation_id is not None
        assert engine.get_status() == {"compensations_submitted": 1, "compensations_succeeded": 1}

        # A later failure on the same command never refunds again
        await executor.execute("bsc", command.command_id, [command], event)
        assert len(refunds_sent(clients["ethereum"])) == 1

    @pytest.mark.asyncio
    async def test_refund_uses_fresh_command_id(self, engine, executor, clients, state_store):
        """Test the refund batch is keyed by the stored compensation id."""
        event = make_event()
        command = CommandTranslator.build_command(event)
        fail_on(clients["bsc"])
        for _ in range(3):
            await executor.execute("bsc", command.command_id, [command], event)

        record = await state_store.get_failure(failure_key(command.command_id, "bsc"))
        refund_call = clients["ethereum"].build_execute_transaction.call_args
        assert refund_call.args[0] == record.compensation_id
        assert refund_call.args[0] != command.command_id

    @pytest.mark.asyncio
    async def test_call_without_tokens_is_not_claimed(self, engine, state_store, clients):
        """Test that plain contract calls stay exhausted."""
        event = make_event(EventKind.CONTRACT_CALL)
        command = CommandTranslator.build_command(event)
        failed, _ = await state_store.record_failure(
            command.command_id, "bsc", [command], event, "reverted", 1
        )

        assert await engine.compensate(failed) is None
        assert (await state_store.get_failure(failed.key)).state is CompensationState.EXHAUSTED
        clients["ethereum"].build_execute_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_record_is_not_compensated(self, engine, state_store, clients):
        """Test that only exhausted records can be claimed."""
        event = make_event()
        command = CommandTranslator.build_command(event)
        failed, _ = await state_store.record_failure(
            command.command_id, "bsc", [command], event, "reverted", 3
        )

        assert await engine.compensate(failed) is None
        clients["ethereum"].build_execute_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_refund_enters_failure_store(self, engine, state_store, clients, caplog):
        """Test that a failing refund is tracked and flagged for an operator."""
        event = make_event()
        command = CommandTranslator.build_command(event)
        failed, _ = await state_store.record_failure(
            command.command_id, "bsc", [command], event, "reverted", 1
        )
        fail_on(clients["ethereum"])

        result = await engine.compensate(failed)

        assert not result.success
        refund = next(r for r in await state_store.list_failures() if r.source_event is None)
        assert refund.destination_chain == "ethereum"
        assert refund.retry_count == 1

        with caplog.at_level("ERROR"):
            for _ in range(2):
                await engine.executor.execute("ethereum", refund.command_id, refund.commands)

        refund = await state_store.get_failure(refund.key)
        assert refund.state is CompensationState.EXHAUSTED
        assert "operator action required" in caplog.text

    @pytest.mark.asyncio
    async def test_manual_trigger(self, engine, state_store, clients):
        """Test forcing compensation of an active failure."""
        event = make_event(EventKind.TOKEN_SENT, amount=77)
        command = CommandTranslator.build_command(event)
        await state_store.record_failure(command.command_id, "bsc", [command], event, "reverted", 3)

        result = await engine.trigger_manual(command.command_id)

        assert result["command_id"] == command.command_id
        outcome, = result["compensations"]
        assert outcome["submitted"]
        assert outcome["success"]
        assert outcome["state"] == "compensated"
        assert refunds_sent(clients["ethereum"])[0][1] == 77

    @pytest.mark.asyncio
    async def test_manual_trigger_twice(self, engine, state_store, clients):
        """Test a second manual trigger reports no new submission."""
        event = make_event()
        command = CommandTranslator.build_command(event)
        await state_store.record_failure(command.command_id, "bsc", [command], event, "reverted", 3)

        await engine.trigger_manual(command.command_id)
        second = await engine.trigger_manual(command.command_id)

        assert not second["compensations"][0]["submitted"]
        assert len(refunds_sent(clients["ethereum"])) == 1

    @pytest.mark.asyncio
    async def test_manual_trigger_unknown_command(self, engine):
        """Test triggering compensation for an unknown command id."""
        with pytest.raises(CompensationError, match="No failed transaction"):
            await engine.trigger_manual("0x" + "99" * 32)

    @pytest.mark.asyncio
    async def test_concurrent_sweep_and_manual_trigger(self, engine, executor, state_store, clients, clock):
        """Test a sweep racing a manual trigger refunds exactly once."""
        event = make_event()
        command = CommandTranslator.build_command(event)
        await state_store.record_failure(command.command_id, "bsc", [command], event, "reverted", 1)
        processor = RetryProcessor(state_store, executor, engine, RetryConfig(), clock=clock)

        await asyncio.gather(
            processor.sweep(),
            engine.trigger_manual(command.command_id),
            processor.sweep(),
        )

        assert len(refunds_sent(clients["ethereum"])) == 1
        record = await state_store.get_failure(failure_key(command.command_id, "bsc"))
        assert record.state is CompensationState.COMPENSATED

    @pytest.mark.asyncio
    async def test_sweep_skips_record_compensated_mid_sweep(self, engine, executor, state_store, clients, clock):
        """Test a record compensated while the sweep is busy is not executed again."""
        first_event, second_event = make_event(log_index=0), make_event(log_index=1)
        first = CommandTranslator.build_command(first_event)
        second = CommandTranslator.build_command(second_event)
        await state_store.record_failure(first.command_id, "bsc", [first], first_event, "reverted", 3)
        await state_store.record_failure(second.command_id, "bsc", [second], second_event, "reverted", 3)
        clock.advance(120)
        processor = RetryProcessor(state_store, executor, engine, RetryConfig(), clock=clock)

        entered, release = asyncio.Event(), asyncio.Event()

        async def is_command_executed(command_id):
            if command_id == first.command_id:
                entered.set()
                await release.wait()
            return False

        clients["bsc"].is_command_executed = AsyncMock(side_effect=is_command_executed)

        sweep = asyncio.create_task(processor.sweep())
        await entered.wait()
        await engine.trigger_manual(second.command_id)
        release.set()
        await sweep

        executed = [call.args[0] for call in clients["bsc"].build_execute_transaction.call_args_list]
        assert executed == [first.command_id]
        assert len(refunds_sent(clients["ethereum"])) == 1
        record = await state_store.get_failure(failure_key(second.command_id, "bsc"))
        assert record.state is CompensationState.COMPENSATED

    @pytest.mark.asyncio
    async def test_interrupted_refund_is_resubmitted(self, engine, state_store, clients, signer, clock):
        """Test a refund claimed before a crash is submitted after restart."""
        event = make_event(amount=500)
        command = CommandTranslator.build_command(event)
        failed, _ = await state_store.record_failure(
            command.command_id, "bsc", [command], event, "reverted", 1
        )

        entered = asyncio.Event()

        async def hang(command_id):
            entered.set()
            await asyncio.Event().wait()

        clients["ethereum"].is_command_executed = AsyncMock(side_effect=hang)
        task = asyncio.create_task(engine.compensate(failed))
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        clients["ethereum"].build_execute_transaction.assert_not_called()

        # Restart on the persisted state
        store = JsonFileStateStore(state_store.state_dir, clock=clock)
        ethereum = make_client("ethereum", ETHEREUM_GATEWAY)
        restarted = CommandExecutor({"ethereum": ethereum, "bsc": clients["bsc"]}, signer, store, ExecutionConfig())
        processor = RetryProcessor(
            store, restarted, CompensationEngine(store, restarted), RetryConfig(), clock=clock
        )
        compensated = await store.get_failure(failed.key)
        assert compensated.state is CompensationState.COMPENSATED

        await processor.sweep()
        await processor.sweep()

        refunds = refunds_sent(ethereum)
        assert len(refunds) == 1
        assert refunds[0][1] == 500
        assert ethereum.build_execute_transaction.call_args.args[0] == compensated.compensation_id
        assert await store.get_failure(failure_key(compensated.compensation_id, "ethereum")) is None

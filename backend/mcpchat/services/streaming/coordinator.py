"""
Stream Coordinator.

Runs one generation cycle per user message:
wait briefly for a subscriber, resolve the AI connection, stream from the
provider, relay every fragment, persist the result and emit exactly one
terminal event (complete or error).

Only one cycle per conversation runs at a time. A second request for the
same conversation waits for the first to finish.
"""
import asyncio
import logging
from typing import Optional

from statemachine import State, StateMachine

from mcpchat.config import settings
from mcpchat.errors import EmptyResponse, NoActiveConnection, PersistenceFailure, StreamingError
from mcpchat.services.store import ChatStore, ConnectionData, StoreError, store

from .providers import ProviderStreamClient, provider_client
from .registry import SubscriberRegistry, registry
from .types import GenerationRequest, StreamEvent, StreamResult, StreamState

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Sorry, I could not generate a response"


class GenerationMachine(StateMachine):
    """Lifecycle of one generation cycle for a conversation."""

    idle = State(initial=True)
    awaiting_subscriber = State()
    generating = State()
    completing = State()
    failing = State()

    request = idle.to(awaiting_subscriber)
    begin = awaiting_subscriber.to(generating)
    finish = generating.to(completing)
    fail = generating.to(failing) | completing.to(failing) | awaiting_subscriber.to(failing)
    settle = completing.to(idle) | failing.to(idle)

    def __init__(self, conversation_id: int, **kwargs):
        self.conversation_id = conversation_id
        super().__init__(**kwargs)

    def after_transition(self, event, source: State, target: State) -> None:
        logger.debug(
            "Conversation %s: %s -> %s (%s)",
            self.conversation_id,
            source.id,
            target.id,
            event,
        )


class StreamCoordinator:
    """
    Orchestrates generation cycles.

    Workflow:
    1. Send-message handler persists the user message and calls submit()
    2. Coordinator waits up to the grace period for a subscriber
    3. Fragments are broadcast as they are decoded
    4. Assistant message persisted, then complete (or error) broadcast
    """

    def __init__(
        self,
        store: ChatStore,
        registry: SubscriberRegistry,
        client: ProviderStreamClient,
        grace_period: Optional[float] = None,
        chunk_size: Optional[int] = None,
        chunk_delay: Optional[float] = None,
    ):
        self._store = store
        self._registry = registry
        self._client = client
        self.grace_period = grace_period if grace_period is not None else settings.subscriber_grace_period
        self.chunk_size = chunk_size or settings.fallback_chunk_size
        self.chunk_delay = chunk_delay if chunk_delay is not None else settings.fallback_chunk_delay
        self._tasks: set[asyncio.Task] = set()
        self._machines: dict[int, GenerationMachine] = {}

    def submit(self, request: GenerationRequest) -> asyncio.Task:
        """
        Start a generation cycle in the background.

        Non-blocking - returns the task immediately.
        """
        task = asyncio.create_task(
            self.run(request),
            name=f"generation-{request.conversation_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        logger.info("Scheduled generation for conversation %s", request.conversation_id)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Generation task %s crashed", task.get_name(), exc_info=task.exception())

    def state_of(self, conversation_id: int) -> str:
        """Current lifecycle state for a conversation."""
        machine = self._machines.get(conversation_id)
        return machine.current_state.id if machine else "idle"

    @property
    def active_count(self) -> int:
        """Number of scheduled or running cycles."""
        return len(self._tasks)

    async def cancel_all(self) -> None:
        """Cancel every running cycle; partial text is still persisted."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self, request: GenerationRequest) -> StreamResult:
        """Run one cycle, serialized with any other cycle for the same conversation."""
        session = self._registry.session(request.conversation_id)
        session.pending += 1
        try:
            if session.lock.locked():
                logger.info(
                    "Generation already in flight for conversation %s, waiting",
                    request.conversation_id,
                )
            async with session.lock:
                session.touch()
                return await self._cycle(request)
        finally:
            session.pending -= 1
            session.touch()

    async def _cycle(self, request: GenerationRequest) -> StreamResult:
        conversation_id = request.conversation_id
        machine = GenerationMachine(conversation_id)
        self._machines[conversation_id] = machine
        state = StreamState(conversation_id=conversation_id)

        try:
            machine.request()
            if self._registry.count(conversation_id) == 0:
                joined = await self._registry.wait_for_subscriber(conversation_id, self.grace_period)
                if not joined:
                    logger.warning(
                        "No subscribers for conversation %s after %.1fs, generating without live delivery",
                        conversation_id,
                        self.grace_period,
                    )

            machine.begin()
            try:
                await self._generate(request, state)
                if not state.accumulated_content.strip():
                    raise EmptyResponse("Empty response from AI service")
            except Exception as e:
                machine.fail()
                return await self._fail(state, e)

            machine.finish()
            return await self._complete(machine, state)

        except asyncio.CancelledError:
            if state.message_id is not None and machine.completing.is_active:
                # Reply is already stored; finish the cycle as a success
                self._registry.broadcast(
                    conversation_id,
                    StreamEvent.complete(conversation_id, state.message_id),
                )
            elif not machine.failing.is_active:
                machine.fail()
                await self._fail(state, StreamingError("Generation cancelled"))
            raise

        finally:
            if machine.completing.is_active or machine.failing.is_active:
                machine.settle()
            self._machines.pop(conversation_id, None)

    async def _resolve_connection(self, request: GenerationRequest) -> ConnectionData:
        if request.ai_connection_id is not None:
            connection = await self._store.get_connection(request.ai_connection_id, active_only=True)
            if connection is None:
                raise NoActiveConnection(f"AI connection {request.ai_connection_id} not found or inactive")
            return connection

        connection = await self._store.get_latest_active_connection()
        if connection is None:
            raise NoActiveConnection("No active AI connection found. Please configure an AI connection first.")
        return connection

    async def _generate(self, request: GenerationRequest, state: StreamState) -> None:
        conversation_id = request.conversation_id
        connection = await self._resolve_connection(request)
        messages = await self._store.list_messages(conversation_id)
        history = [{"role": m.role, "content": m.content} for m in messages]

        state.provider = connection.provider
        state.model = self._client.resolve_model(connection, request.model)
        logger.info(
            "Generating for conversation %s with %s connection %s (%d messages, %d subscribers)",
            conversation_id,
            connection.provider,
            connection.id,
            len(history),
            self._registry.count(conversation_id),
        )

        if self._client.supports_streaming(connection):
            stream = self._client.stream(connection, history, request.model)
            async for fragment in stream:
                self._registry.broadcast(conversation_id, state.append(fragment))
            return

        text = await self._client.generate(connection, history, request.model)
        await self._replay(state, text)

    async def _replay(self, state: StreamState, text: str) -> None:
        """Deliver a non-streamed response as fixed-size chunks."""
        if self._registry.count(state.conversation_id) == 0:
            if text:
                state.append(text)
            return

        for start in range(0, len(text), self.chunk_size):
            event = state.append(text[start:start + self.chunk_size])
            self._registry.broadcast(state.conversation_id, event)
            await asyncio.sleep(self.chunk_delay)

    async def _complete(self, machine: GenerationMachine, state: StreamState) -> StreamResult:
        conversation_id = state.conversation_id
        try:
            message = await self._store.add_message(
                conversation_id,
                "assistant",
                state.accumulated_content,
                state.metadata(),
            )
        except StoreError as e:
            machine.fail()
            failure = PersistenceFailure(f"Failed to save the response ({e.message})")
            logger.error("Conversation %s: %s", conversation_id, failure.message)
            self._registry.broadcast(
                conversation_id,
                StreamEvent.error(conversation_id, f"{ERROR_PREFIX}: {failure.message}"),
            )
            return StreamResult(message_id=None, content=state.accumulated_content, succeeded=False)

        state.message_id = message.id
        await self._touch(conversation_id)
        logger.info(
            "Generation complete for conversation %s: message %s, %d chars in %d chunks",
            conversation_id,
            message.id,
            len(state.accumulated_content),
            state.chunk_count,
        )
        self._registry.broadcast(conversation_id, StreamEvent.complete(conversation_id, message.id))
        return StreamResult(message_id=message.id, content=message.content, succeeded=True)

    async def _fail(self, state: StreamState, error: BaseException) -> StreamResult:
        """
        Persist and announce a failed cycle.

        Text already streamed is kept as the message content and tagged
        truncated; otherwise the stored message is the error description.
        """
        conversation_id = state.conversation_id
        if isinstance(error, (StreamingError, StoreError)):
            cause = error.message
            logger.error("Generation for conversation %s failed: %s", conversation_id, cause)
        else:
            cause = str(error) or type(error).__name__
            logger.exception("Unexpected error generating for conversation %s", conversation_id)

        text = f"{ERROR_PREFIX}: {cause}"
        error_type = type(error).__name__
        if state.accumulated_content.strip() and not isinstance(error, EmptyResponse):
            content = state.accumulated_content
            metadata = state.metadata(truncated=True, error=cause, error_type=error_type)
        else:
            content = text
            metadata = state.metadata(error=cause, error_type=error_type)

        message_id = None
        try:
            message = await self._store.add_message(conversation_id, "assistant", content, metadata)
            message_id = message.id
            await self._touch(conversation_id)
        except StoreError as e:
            logger.error("Failed to save error message for conversation %s: %s", conversation_id, e.message)

        self._registry.broadcast(conversation_id, StreamEvent.error(conversation_id, text))
        return StreamResult(message_id=message_id, content=content, succeeded=False)

    async def _touch(self, conversation_id: int) -> None:
        try:
            await self._store.touch_conversation(conversation_id)
        except StoreError as e:
            logger.warning("Could not update conversation %s timestamp: %s", conversation_id, e.message)


# Singleton instance
coordinator = StreamCoordinator(store, registry, provider_client)

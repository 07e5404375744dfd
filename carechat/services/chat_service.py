"""Chat service layer for streamed assistant turns.

Handles:
- Message storage (user + assistant) through the conversation store
- Prompt assembly with the user's uploaded-document context
- Streaming the completion to the caller fragment by fragment
- Recording a fixed apology when the completion API fails
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from carechat.errors import UpstreamError
from carechat.models.conversation import Message, MessageRole
from carechat.services.completion import CompletionBridge
from carechat.services.context_cache import ContextCache, context_cache
from carechat.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful healthcare AI companion. Provide accurate, empathetic "
    "health info. Always advise consulting a doctor."
)

UPSTREAM_ERROR_MESSAGE = (
    "I'm sorry, I encountered an error connecting to the AI service. "
    "Please try again later."
)

CONTEXT_PROMPT_TEMPLATE = (
    "Here is the data from the uploaded Excel file:\n{context}\n\nUser Question: {question}"
)

EVENT_CONVERSATION_ID = "conversationId"
EVENT_RECEIVE_MESSAGE = "receiveMessage"
EVENT_ERROR = "error"

Emit = Callable[[str, str], Awaitable[None]]


@dataclass
class TurnResult:
    """Outcome of one completed turn."""
    conversation_id: str
    user_message: Message
    assistant_message: Message
    fragments: List[str] = field(default_factory=list)
    upstream_failed: bool = False


class ChatService:
    """Service layer for chat turns."""

    def __init__(
        self,
        engine: Engine,
        bridge: Optional[CompletionBridge] = None,
        store: Optional[ConversationStore] = None,
        cache: Optional[ContextCache] = None,
    ):
        """Initialize chat service."""
        self.engine = engine
        self.bridge = bridge or CompletionBridge()
        self.store = store or ConversationStore()
        self.cache = cache if cache is not None else context_cache

    def set_context(self, user_id: str, text: str, rows: Optional[int] = None) -> str:
        """
        Seed the user's document context.

        Args:
            user_id: Owner of the uploaded document
            text: Extracted document text
            rows: Row count, when the caller parsed tabular data

        Returns:
            Short human-readable summary of what was stored
        """
        self.cache.put(user_id, text)
        if rows is None:
            rows = sum(1 for line in text.splitlines() if line.strip())

        logger.info(f"Document context stored: user={user_id}, rows={rows}")
        return (
            f"I have analyzed the uploaded file. It contains {rows} rows of data. "
            "You can now ask me questions about it."
        )

    def build_prompt(self, user_id: str, text: str) -> str:
        """Prefix the question with the user's document context, if any."""
        document = self.cache.get(user_id)
        if document:
            return CONTEXT_PROMPT_TEMPLATE.format(context=document, question=text)
        return text

    async def handle_turn(
        self,
        user_id: str,
        text: str,
        conversation_id: Optional[str],
        emit: Emit,
    ) -> TurnResult:
        """
        Run one chat turn and stream the reply through emit.

        Flow:
        1. Store user message (creates a conversation if needed)
        2. Emit the resolved conversation ID
        3. Build prompt with document context
        4. Stream completion, emitting and accumulating each fragment
        5. Store the accumulated assistant message

        Upstream failures are recovered: the apology is emitted once and
        stored as the assistant message. Cancellation (client gone) stops
        the stream and stores nothing further.

        Args:
            user_id: Authenticated user ID bound to the connection
            text: User message content
            conversation_id: Existing conversation or None for new
            emit: Coroutine sending (event, data) to the originating client

        Returns:
            TurnResult with both stored messages

        Raises:
            PersistenceError: If either message cannot be stored
        """
        user_msg = await self._append(MessageRole.USER, text, user_id, conversation_id)
        conversation_id = user_msg.conversation_id
        await emit(EVENT_CONVERSATION_ID, conversation_id)

        prompt = self.build_prompt(user_id, text)
        fragments: List[str] = []
        upstream_failed = False

        stream = self.bridge.stream(SYSTEM_PROMPT, prompt)
        try:
            async for fragment in stream:
                fragments.append(fragment)
                await emit(EVENT_RECEIVE_MESSAGE, fragment)
            content = "".join(fragments)
        except UpstreamError as e:
            logger.error(f"Completion failed for user={user_id}, conversation={conversation_id}: {e}")
            upstream_failed = True
            fragments = [UPSTREAM_ERROR_MESSAGE]
            content = UPSTREAM_ERROR_MESSAGE
            await emit(EVENT_RECEIVE_MESSAGE, UPSTREAM_ERROR_MESSAGE)
        finally:
            await stream.aclose()

        assistant_msg = await self._append(
            MessageRole.ASSISTANT, content, user_id, conversation_id
        )

        logger.info(
            f"Chat turn processed: user={user_id}, conversation={conversation_id}, "
            f"message_id={user_msg.id}, response_id={assistant_msg.id}, fragments={len(fragments)}"
        )

        return TurnResult(
            conversation_id=conversation_id,
            user_message=user_msg,
            assistant_message=assistant_msg,
            fragments=fragments,
            upstream_failed=upstream_failed,
        )

    async def _append(
        self,
        role: MessageRole,
        content: str,
        user_id: str,
        conversation_id: Optional[str],
    ) -> Message:
        """Store a message off the event loop with its own session."""
        def _write() -> Message:
            with Session(self.engine, expire_on_commit=False) as session:
                return self.store.append_message(
                    session, role, content, user_id, conversation_id
                )

        return await run_in_threadpool(_write)

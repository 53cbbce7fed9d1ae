"""
Request coordinator - recall from the semantic store, compose, send, and eject.

Every request walks the same states:

    IDLE -> RECALLING -> COMPOSING -> SENT -> MAYBE_EJECTING -> IDLE

Recall and archival are best effort. A failure while recalling means the
request goes out without injected memories; a failure while archiving an
ejected turn means that turn is gone for good (its history slot has already
been freed). Only the completion call itself can fail a request.

Embedding, search and index builds are CPU-bound and run in worker threads
so they don't stall the event loop. Recalled memories enter working
memory before the request is sent; history and the store are only mutated
after a reply has been fully received.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from config import RAG_TOP_K, RECALL_DISTANCE_THRESHOLD, RECALL_TOP_K, AssistantConfig
from llm.completion import CompletionClient
from llm.template import ChatTemplate
from memory.embeddings import Tokenizer
from memory.errors import MemoryEngineError
from memory.history import RollingHistory
from memory.long_term import SemanticStore
from memory.retrieval import Chunk, EphemeralIndex, RetrievalPipeline, build_context_block
from memory.short_term import Memory, Role, WorkingMemory, build_brainless_preamble

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    IDLE = "idle"
    RECALLING = "recalling"
    COMPOSING = "composing"
    SENT = "sent"
    MAYBE_EJECTING = "maybe_ejecting"


class EjectionCoordinator:
    """Links rolling history, working memory and the semantic store for one session."""

    def __init__(
        self,
        config: AssistantConfig,
        client: CompletionClient,
        template: ChatTemplate,
        store: Optional[SemanticStore] = None,
        brain: Optional[WorkingMemory] = None,
        history: Optional[RollingHistory] = None,
        rag_pipeline: Optional[RetrievalPipeline] = None,
        rag_index: Optional[EphemeralIndex] = None,
        count_tokens: Optional[Callable[[str], int]] = None,
        rag_top_k: int = RAG_TOP_K,
    ):
        self.config = config
        self.client = client
        self.template = template
        self.store = store
        self.brain = brain
        if count_tokens is None:
            count_tokens = brain.count_tokens if brain is not None else Tokenizer().count_tokens
        self.count_tokens = count_tokens
        if history is None:
            history = RollingHistory(config.session_budget(), count_tokens)
        self.history = history
        self.rag_pipeline = rag_pipeline
        self.rag_index = rag_index
        self.rag_top_k = rag_top_k
        self.state = RequestState.IDLE

    def _enter(self, state: RequestState) -> None:
        logger.debug("Request state %s -> %s", self.state.value, state.value)
        self.state = state

    def preamble(self) -> list[Memory]:
        """Brain preamble (or bare system prompt) followed by the template's seed messages."""
        if self.brain is not None:
            messages = self.brain.build_preamble()
        else:
            messages = build_brainless_preamble(self.template)
        return messages + list(self.template.messages)

    async def recall(self, question: str) -> list[Memory]:
        """Push archived memories close to the question into working memory."""
        if self.store is None or self.brain is None or not len(self.store):
            return []
        try:
            vector = await asyncio.to_thread(self.store.embed_text_to_vector, question)
            hits = await asyncio.to_thread(self.store.search_memories, vector, RECALL_TOP_K)
        except MemoryEngineError as e:
            logger.warning("Recall failed, continuing without memories: %s", e)
            return []

        relevant = [(m, d) for _, m, d in hits if d < RECALL_DISTANCE_THRESHOLD]
        # Farthest goes in first so it is the first to be evicted.
        recalled = []
        for memory, distance in reversed(relevant):
            logger.debug("Recalled memory at distance %.3f", distance)
            self.brain.add_memory(memory)
            recalled.append(memory)
        return recalled

    async def retrieve_documents(self, question: str) -> list[Chunk]:
        if self.rag_pipeline is None or self.rag_index is None:
            return []
        return await asyncio.to_thread(
            self.rag_pipeline.retrieve, self.rag_index, question, self.rag_top_k
        )

    def compose(self, question: str, rag_chunks: Optional[list[Chunk]] = None) -> list[Memory]:
        """Full message list for the request: preamble, history, document context, question."""
        messages = self.preamble() + list(self.history.turns)
        context = build_context_block(rag_chunks or [])
        if context:
            messages.append(Memory(Role.USER, context))
        messages.append(Memory(Role.USER, self.template.wrap_question(question)))
        return messages

    async def _archive(self, memory: Memory) -> bool:
        try:
            vector = await asyncio.to_thread(self.store.embed_text_to_vector, memory.content)
            self.store.add_vector_with_content(vector, memory)
        except MemoryEngineError as e:
            logger.warning("Dropping ejected %s turn, could not archive it: %s", memory.role.value, e)
            return False
        return True

    async def eject(self) -> int:
        """Move oldest turn pairs into the store while history is over budget. Returns memories archived."""
        archived = 0
        preamble = self.preamble()
        while len(self.history) and self.history.should_eject(preamble):
            turns = [t for t in self.history.pop_oldest_pair() if t is not None]
            logger.info("Ejecting %d oldest turns from history", len(turns))
            if self.store is None:
                continue
            added = 0
            for turn in turns:
                if await self._archive(turn):
                    added += 1
            if not added:
                continue
            try:
                await asyncio.to_thread(self.store.build)
            except MemoryEngineError as e:
                dropped = self.store.discard_pending()
                logger.warning("Index build failed, dropped %d ejected memories: %s", dropped, e)
                continue
            archived += added
        return archived

    async def ask(self, question: str, on_token: Optional[Callable[[str], None]] = None) -> str:
        """Answer a question with recalled memory and optional document context."""
        try:
            self._enter(RequestState.RECALLING)
            await self.recall(question)
            rag_chunks = await self.retrieve_documents(question)

            self._enter(RequestState.COMPOSING)
            messages = self.compose(question, rag_chunks)

            self._enter(RequestState.SENT)
            reply = await self.client.complete(
                messages,
                stream=bool(self.config.should_stream),
                response_format=self.template.response_format,
                on_token=on_token,
            )

            self._enter(RequestState.MAYBE_EJECTING)
            self.history.append(Memory(Role.USER, self.template.wrap_question(question)))
            self.history.append(Memory(Role.ASSISTANT, reply))
            await self.eject()
            return reply
        finally:
            self._enter(RequestState.IDLE)


async def ask(
    question: str,
    template: ChatTemplate,
    store: Optional[SemanticStore] = None,
    brain: Optional[WorkingMemory] = None,
    *,
    config: AssistantConfig,
    client: Optional[CompletionClient] = None,
    history: Optional[RollingHistory] = None,
    rag_pipeline: Optional[RetrievalPipeline] = None,
    rag_index: Optional[EphemeralIndex] = None,
    on_token: Optional[Callable[[str], None]] = None,
) -> str:
    """One-call entry point: build a coordinator for these collaborators and ask."""
    coordinator = EjectionCoordinator(
        config,
        client or CompletionClient(config),
        template,
        store=store,
        brain=brain,
        history=history,
        rag_pipeline=rag_pipeline,
        rag_index=rag_index,
    )
    return await coordinator.ask(question, on_token=on_token)

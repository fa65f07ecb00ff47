# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# chat/builder.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from builder_ai_app.apps.chat.api.socketio.connection_manager import ConnectionManager
from builder_ai_app.infra.llm.llm_data_model import ChatMessage, ToolSchema
from builder_ai_app.infra.llm.tool_call_driver import ChunkedToolCallDriver, DriverConfig, DriverResult
from builder_ai_app.infra.llm.tools import PROJECT_TOOLS, is_file_emission_tool
from builder_ai_app.infra.service_hub.errors import ServiceException, is_retryable
from builder_ai_app.utils.retry import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

SUMMARY_EVENT = "build:summary"

DEFAULT_SYSTEM_PROMPT = (
    "You are an application builder. The user's request may arrive in several chunks; "
    "reply to each chunk with a short acknowledgement. When told that all chunks were "
    "delivered, answer with exactly one function call carrying valid JSON arguments."
)

# (tool_name, args, session_id) -> anything the caller wants back
ApplyToolCall = Callable[[str, Dict[str, Any], str], Awaitable[Any]]


@dataclass
class BuildOutcome:
    result: DriverResult
    args: Dict[str, Any]
    applied: Any = None


class BuildOrchestrator:
    """
    Prompt -> driver (with retry on transient transport errors) -> side effect -> summary event.
    """

    def __init__(self,
                 driver: ChunkedToolCallDriver,
                 connections: ConnectionManager,
                 *,
                 apply_tool_call: Optional[ApplyToolCall] = None,
                 max_attempts: int = 3,
                 retry_delay_s: float = 1.0):
        self.driver = driver
        self.connections = connections
        self.apply_tool_call = apply_tool_call
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s

    async def run(self,
                  prompt: str,
                  session_id: str,
                  *,
                  tool_schemas: Optional[Sequence[ToolSchema]] = None,
                  system_prompt: str = DEFAULT_SYSTEM_PROMPT,
                  history: Optional[Sequence[ChatMessage]] = None,
                  config: Optional[DriverConfig] = None) -> BuildOutcome:
        messages = [ChatMessage.system(system_prompt), *(history or ()), ChatMessage.user(prompt)]

        run_driver = retry_with_exponential_backoff(
            self.driver.run,
            initial_delay=self.retry_delay_s,
            max_attempts=self.max_attempts,
            errors=(ServiceException,),
            retry_if=is_retryable,
        )
        result = await run_driver(messages,
                                  tool_schemas=tool_schemas or PROJECT_TOOLS,
                                  session_id=session_id,
                                  config=config)
        args = result.args()
        logger.info(f"[BuildOrchestrator] session={session_id} tool={result.tool_call_name} "
                    f"acknowledged={result.acknowledged}")

        applied = None
        if self.apply_tool_call is not None:
            applied = await self.apply_tool_call(result.tool_call_name, args, session_id)

        await self._publish_summary(session_id, result, args)
        return BuildOutcome(result=result, args=args, applied=applied)

    async def _publish_summary(self, session_id: str, result: DriverResult, args: Dict[str, Any]):
        summary: Dict[str, Any] = {
            "toolCallName": result.tool_call_name,
            "acknowledged": result.acknowledged,
            "argKeys": sorted(args),
        }
        if is_file_emission_tool(result.tool_call_name):
            ops = args.get("operations")
            summary["operations"] = len(ops) if isinstance(ops, list) else 0
        try:
            await self.connections.publish_event(SUMMARY_EVENT, summary,
                                                 session_id=session_id,
                                                 topic=self.connections.outbound_topic)
        except Exception as e:
            logger.error(f"[BuildOrchestrator] summary publish for {session_id} failed: {e}")

"""LLM Client for Groq API integration with structured (tool-call) output."""
import json
import time
import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from groq import AsyncGroq
from groq import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    RateLimitError,
)
from pydantic import BaseModel, ValidationError

from config import GROQ_API_KEY, GENERATION_MODEL, GENERATION_MAX_TOKENS, GENERATION_TEMPERATURE
from models.assignment import QueryAssignmentMap
from models.errors import ProviderClientError, ProviderError, ProviderErrorCode
from models.optimization import (
    ChunkScoreData,
    ChunkSummaryInput,
    ContentAnalysis,
    ContentBrief,
    ExplanationsResult,
    KeywordSuggestions,
    OptimizationResult,
    SummaryResult,
    ValidatedChunk,
)
from services import prompt_builder
from services.prompt_builder import Prompt

logger = logging.getLogger(__name__)

TRUNCATED_MESSAGE = "AI response was truncated. Please try again with shorter content or fewer queries."

T = TypeVar("T", bound=BaseModel)

_CLOSERS = {"{": "}", "[": "]"}


def repair_truncated_json(raw: str) -> Any:
    """
    Best-effort repair of a JSON document cut off mid-stream.

    Closes an unterminated string, drops a dangling comma, then appends the
    closers for every unmatched '{' / '[' (brackets inside strings are
    ignored) in nesting order and parses once more.

    Raises:
        ProviderClientError: TRUNCATED_RESPONSE if the repaired text still
            does not parse
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for ch in raw:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()

    repaired = raw
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    else:
        repaired = repaired.rstrip()
        if repaired.endswith(","):
            repaired = repaired[:-1]

    repaired += "".join(_CLOSERS[opener] for opener in reversed(stack))

    try:
        parsed = json.loads(repaired)
    except json.JSONDecodeError as e:
        error = ProviderError(
            code=ProviderErrorCode.TRUNCATED_RESPONSE,
            message=TRUNCATED_MESSAGE,
            details={"unclosed": len(stack), "parse_error": str(e), "length": len(raw)},
        )
        logger.error(
            f"Could not repair truncated response: {e}",
            extra={"error_code": error.code.value, "error_details": error.details}
        )
        raise ProviderClientError(error)

    logger.warning(f"Repaired truncated JSON response by closing {len(stack)} brackets")
    return parsed


def parse_tool_arguments(raw: Optional[str]) -> Any:
    """Parse tool-call arguments, falling back to a single repair attempt."""
    if not raw:
        raise ProviderClientError(ProviderError(
            code=ProviderErrorCode.MALFORMED_RESPONSE,
            message="AI returned an empty structured response",
        ))
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return repair_truncated_json(raw)


class LLMClient:
    """Client for interfacing with Groq API for structured generation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = GENERATION_MODEL,
        max_tokens: int = GENERATION_MAX_TOKENS,
        temperature: float = GENERATION_TEMPERATURE,
        client: Optional[AsyncGroq] = None
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Generation model name
            max_tokens: Maximum tokens per response
            temperature: Sampling temperature
            client: Optional pre-built AsyncGroq client
        """
        self.api_key = api_key or GROQ_API_KEY
        if client is None and not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = client or AsyncGroq(api_key=self.api_key)
        logger.info(f"LLMClient initialized successfully with model: {model}")

    async def call_tool(self, prompt: Prompt, output_model: Optional[Type[T]] = None) -> T:
        """
        Send a prompt with a forced tool call and validate the arguments.

        Args:
            prompt: System/user prompt plus the tool to force
            output_model: Model to validate against (defaults to the tool's)

        Returns:
            Validated pydantic model instance

        Raises:
            ProviderClientError: Structured error with code, message, and details
        """
        output_model = output_model or prompt.tool.output_model
        tool_name = prompt.tool.name
        start_time = time.time()

        try:
            logger.debug(f"Calling tool {tool_name} with model: {self.model}")
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=prompt.messages(),
                tools=[prompt.tool.to_tool()],
                tool_choice=prompt.tool.tool_choice(),
                max_tokens=self.max_tokens,
                temperature=self.temperature
            )

        except RateLimitError as e:
            raise self._error(
                ProviderErrorCode.RATE_LIMITED,
                "Rate limit exceeded. Please try again in a few moments.",
                e, tool_name, start_time, retry_after=60
            )

        except AuthenticationError as e:
            raise self._error(
                ProviderErrorCode.AUTHENTICATION_ERROR,
                "Authentication failed. Please check your API key.",
                e, tool_name, start_time
            )

        except APIStatusError as e:
            if e.status_code == 402:
                raise self._error(
                    ProviderErrorCode.QUOTA_EXHAUSTED,
                    "AI usage quota exhausted. Please add credits to continue.",
                    e, tool_name, start_time, status=402
                )
            raise self._error(
                ProviderErrorCode.API_ERROR,
                f"Groq API error: {str(e)}",
                e, tool_name, start_time, status=e.status_code
            )

        except APITimeoutError as e:
            raise self._error(
                ProviderErrorCode.TIMEOUT_ERROR,
                "Request timed out. Please try again.",
                e, tool_name, start_time
            )

        except APIConnectionError as e:
            raise self._error(
                ProviderErrorCode.NETWORK_ERROR,
                "Could not reach the AI provider. Please try again.",
                e, tool_name, start_time
            )

        except APIError as e:
            raise self._error(
                ProviderErrorCode.API_ERROR,
                f"Groq API error: {str(e)}",
                e, tool_name, start_time
            )

        except Exception as e:
            raise self._error(
                ProviderErrorCode.UNKNOWN_ERROR,
                f"Unexpected error during generation: {str(e)}",
                e, tool_name, start_time, error_type=type(e).__name__
            )

        latency_ms = int((time.time() - start_time) * 1000)
        result = self._parse_response(response, output_model, tool_name)

        usage = getattr(response, "usage", None)
        logger.info(
            f"Tool call complete: tool={tool_name}, model={self.model}, "
            f"input_tokens={getattr(usage, 'prompt_tokens', None)}, "
            f"output_tokens={getattr(usage, 'completion_tokens', None)}, "
            f"latency={latency_ms}ms"
        )
        return result

    def _parse_response(self, response: Any, output_model: Type[T], tool_name: str) -> T:
        choices = getattr(response, "choices", None) or []
        choice = choices[0] if choices else None
        if choice is None or getattr(choice, "message", None) is None:
            raise self._protocol_error(
                ProviderErrorCode.MALFORMED_RESPONSE,
                "AI returned an empty response. Please try again.",
                tool=tool_name
            )
        tool_calls = choice.message.tool_calls or []

        if not tool_calls:
            raise self._protocol_error(
                ProviderErrorCode.MALFORMED_RESPONSE,
                "AI did not return structured output. Please try again.",
                tool=tool_name, finish_reason=choice.finish_reason
            )

        call = next((c for c in tool_calls if c.function.name == tool_name), tool_calls[0])
        if choice.finish_reason == "length":
            logger.warning(f"Tool call {tool_name} hit the token limit, response may be truncated")

        data = parse_tool_arguments(call.function.arguments)

        try:
            return output_model.model_validate(data)
        except ValidationError as e:
            raise self._protocol_error(
                ProviderErrorCode.MALFORMED_RESPONSE,
                "AI response did not match the expected format. Please try again.",
                tool=tool_name, validation_errors=e.errors(include_url=False)
            )

    def _protocol_error(self, code: ProviderErrorCode, message: str, **details) -> ProviderClientError:
        details["model"] = self.model
        logger.error(message, extra={"error_code": code.value, "error_details": details})
        return ProviderClientError(ProviderError(code=code, message=message, details=details))

    def _error(
        self,
        code: ProviderErrorCode,
        message: str,
        exc: Exception,
        tool_name: str,
        start_time: float,
        **details
    ) -> ProviderClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        details.update({
            "model": self.model,
            "tool": tool_name,
            "latency_ms": latency_ms,
            "original_error": str(exc),
        })
        error = ProviderError(code=code, message=message, details=details)
        logger.error(
            f"{code.value}: tool={tool_name}, model={self.model}, latency={latency_ms}ms, error={exc}",
            exc_info=True,
            extra={"error_code": code.value, "error_details": details}
        )
        return ProviderClientError(error)

    async def analyze_content(
        self,
        content: str,
        queries: Sequence[str],
        current_scores: Optional[Dict[str, float]] = None
    ) -> ContentAnalysis:
        return await self.call_tool(prompt_builder.build_analyze_prompt(content, queries, current_scores))

    async def optimize_content(
        self,
        content: str,
        queries: Sequence[str],
        analysis: ContentAnalysis,
        current_scores: Optional[Dict[str, float]] = None
    ) -> OptimizationResult:
        """Rewrite the whole content against all queries at once."""
        return await self.call_tool(
            prompt_builder.build_optimize_prompt(content, queries, analysis, current_scores)
        )

    async def optimize_focused(
        self,
        chunks: Sequence[str],
        assignment_map: QueryAssignmentMap,
        analysis: ContentAnalysis,
        chunk_headings: Optional[Sequence[Optional[str]]] = None
    ) -> OptimizationResult:
        """Rewrite each chunk against only the queries assigned to it."""
        return await self.call_tool(
            prompt_builder.build_focused_prompt(chunks, assignment_map, analysis, chunk_headings)
        )

    async def explain_changes(
        self,
        validated_chunks: Sequence[ValidatedChunk],
        queries: Sequence[str]
    ) -> ExplanationsResult:
        return await self.call_tool(prompt_builder.build_explain_prompt(validated_chunks, queries))

    async def summarize(
        self,
        queries: Sequence[str],
        validated_chunks: Sequence[ValidatedChunk],
        chunk_score_data: Sequence[ChunkScoreData]
    ) -> SummaryResult:
        return await self.call_tool(
            prompt_builder.build_summary_prompt(queries, validated_chunks, chunk_score_data)
        )

    async def generate_content_brief(
        self,
        query: str,
        content: str,
        chunk_summaries: Sequence[ChunkSummaryInput]
    ) -> ContentBrief:
        brief = await self.call_tool(prompt_builder.build_brief_prompt(query, content, chunk_summaries))
        # The brief always answers the query it was requested for
        return brief.model_copy(update={"target_query": query})

    async def suggest_keywords(self, content: str) -> KeywordSuggestions:
        return await self.call_tool(prompt_builder.build_keywords_prompt(content))

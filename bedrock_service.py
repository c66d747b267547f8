"""
Amazon Bedrock service module.
Streams Anthropic Claude completions from Bedrock as agent stream events.
"""

import asyncio
import json
import logging
import queue
import threading
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import (
    ClientError, ConnectTimeoutError, EndpointConnectionError, NoCredentialsError, ReadTimeoutError,
)
from dotenv import load_dotenv

from config import aws_config, get_max_output_tokens, get_model_by_id, model_config
from agent.events import StreamDone, StreamError, StreamEvent, TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart

logger = logging.getLogger(__name__)
env_path = '.env'

_RATE_LIMIT_CODES = {"ThrottlingException", "TooManyRequestsException", "throttlingException"}
_SERVER_CODES = {
    "InternalServerException", "ServiceUnavailableException", "ModelNotReadyException", "ModelErrorException",
    "internalServerException", "serviceUnavailableException", "modelStreamErrorException",
}
_TIMEOUT_CODES = {"ModelTimeoutException", "modelTimeoutException"}
_AUTH_CODES = {
    "AccessDeniedException", "UnrecognizedClientException", "ExpiredTokenException",
    "InvalidSignatureException",
}
_EMPTY = "(no content)"


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""

    def __init__(self, message: str, code: str = "UNKNOWN"):
        super().__init__(message)
        self.code = code


def classify_error(exc: Exception) -> StreamError:
    """Map a boto/botocore failure onto a stream error code the retry policy understands."""
    if isinstance(exc, BedrockError):
        return StreamError(exc.code, str(exc))
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _RATE_LIMIT_CODES:
            return StreamError("RATE_LIMIT", f"Rate limited by Bedrock: {message}")
        if code in _SERVER_CODES:
            return StreamError("SERVER_ERROR", f"Bedrock server error: {message}")
        if code in _TIMEOUT_CODES:
            return StreamError("TIMEOUT", f"Model timed out: {message}")
        if code in _AUTH_CODES:
            return StreamError("AUTH_ERROR", f"AWS credentials rejected: {message}")
        if code == "ValidationException":
            return StreamError("INVALID_REQUEST", f"Invalid request: {message}")
        return StreamError("UNKNOWN", f"Bedrock API error: {code} - {message}")
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return StreamError("TIMEOUT", f"Connection to Bedrock timed out: {exc}")
    if isinstance(exc, EndpointConnectionError):
        return StreamError("NETWORK_ERROR", f"Could not reach Bedrock: {exc}")
    if isinstance(exc, NoCredentialsError):
        return StreamError("AUTH_ERROR", "AWS credentials not configured.")
    return StreamError("UNKNOWN", str(exc))


def _non_empty(content: Any) -> List[Dict[str, Any]]:
    """Anthropic requires non-empty content; normalise to a list of blocks."""
    if content is None:
        return [{"type": "text", "text": _EMPTY}]
    if isinstance(content, str):
        return [{"type": "text", "text": content if content.strip() else _EMPTY}]
    blocks = []
    for b in content:
        if b.get("type") == "text" and not (b.get("text") or "").strip():
            continue
        blocks.append(b)
    return blocks or [{"type": "text", "text": _EMPTY}]


def to_anthropic_messages(messages: List[Dict[str, Any]]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Translate wire messages into (system prompt, Anthropic messages).

    Assistant tool_calls become tool_use blocks, tool entries become
    tool_result blocks on a user turn, and consecutive same-role turns are
    merged since the API expects alternating roles.
    """
    system_parts: List[str] = []
    formatted: List[Dict[str, Any]] = []

    def push(role: str, blocks: List[Dict[str, Any]]) -> None:
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": list(blocks)})

    for msg in messages:
        role = msg.get("role")
        if role == "system":
            if msg.get("content"):
                system_parts.append(msg["content"])
        elif role == "user":
            push("user", _non_empty(msg.get("content")))
        elif role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if msg.get("content"):
                blocks.extend(_non_empty(msg["content"]))
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                try:
                    tool_input = json.loads(fn.get("arguments") or "{}")
                except ValueError:
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": tc["id"], "name": fn.get("name", ""), "input": tool_input})
            push("assistant", blocks or [{"type": "text", "text": _EMPTY}])
        elif role == "tool":
            push("user", [{
                "type": "tool_result",
                "tool_use_id": msg["tool_call_id"],
                "content": msg.get("content") or _EMPTY,
            }])

    system = "\n\n".join(system_parts) if system_parts else None
    return system, formatted


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Implements the orchestrator's completion transport.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.client = client or self._create_client()
        self._cancel_event: Optional[threading.Event] = None
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        load_dotenv(env_path, override=True)
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.", code="AUTH_ERROR")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str) -> str:
        """Cross-region inference profile id where the model needs one"""
        if model_id.startswith(("us.", "eu.", "ap.")):
            return model_id
        model = get_model_by_id(model_id)
        if model and model.get("requires_profile"):
            region_prefix = "eu" if self.region.startswith("eu-") else "us"
            return f"{region_prefix}.{model.get('base_id', model_id)}"
        return model_id

    def build_request_body(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        model_id: str,
    ) -> Dict[str, Any]:
        system, formatted = to_anthropic_messages(messages)
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(model_config.max_tokens, get_max_output_tokens(model_id)),
            "messages": formatted,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools
        if model_config.temperature is not None:
            body["temperature"] = model_config.temperature
        return body

    def cancel(self) -> None:
        """Stop the in-flight stream, if any."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one completion. Yields TextDelta / ToolCallStart / ToolCallDelta /
        ToolCallEnd events and finishes with StreamDone, or StreamError on failure.
        boto3's event stream is blocking, so it is drained by a producer thread.
        """
        current_model = model or self.model_id
        try:
            model_identifier = self._get_model_identifier(current_model)
            request_body = self.build_request_body(messages, tools, current_model)
        except Exception as exc:
            error = classify_error(exc)
            logger.error(f"Could not build Bedrock request: [{error.code}] {error.message}")
            yield error
            return

        chunk_queue: queue.Queue = queue.Queue()
        cancelled = threading.Event()
        self._cancel_event = cancelled

        def _stream_producer():
            """Run the blocking event stream in a background thread, forwarding chunks to the queue."""
            try:
                response = self.client.invoke_model_with_response_stream(
                    modelId=model_identifier,
                    body=json.dumps(request_body),
                    contentType="application/json",
                    accept="application/json",
                )
                for event in response["body"]:
                    if cancelled.is_set():
                        break
                    chunk = event.get("chunk")
                    if chunk:
                        chunk_queue.put(json.loads(chunk["bytes"]))
                chunk_queue.put(None)  # sentinel: stream complete
            except Exception as exc:
                chunk_queue.put(exc)

        logger.info(f"Streaming from model: {model_identifier}")
        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        tool_blocks: Dict[int, str] = {}
        usage: Dict[str, int] = {}
        stop_reason: Optional[str] = None
        try:
            while True:
                chunk = await loop.run_in_executor(None, chunk_queue.get)
                if chunk is None:
                    break
                if isinstance(chunk, Exception):
                    error = classify_error(chunk)
                    logger.error(f"Bedrock streaming error: [{error.code}] {error.message}")
                    yield error
                    return

                event_type = chunk.get("type", "")
                index = chunk.get("index", 0)

                if event_type == "message_start":
                    usage.update(chunk.get("message", {}).get("usage", {}))

                elif event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    if block.get("type") == "tool_use":
                        tool_blocks[index] = block.get("id", "")
                        yield ToolCallStart(id=block.get("id", ""), name=block.get("name", ""))

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "text_delta" and delta.get("text"):
                        yield TextDelta(delta["text"])
                    elif delta_type == "input_json_delta" and index in tool_blocks:
                        partial = delta.get("partial_json", "")
                        if partial:
                            yield ToolCallDelta(id=tool_blocks[index], arguments_delta=partial)

                elif event_type == "content_block_stop":
                    if index in tool_blocks:
                        yield ToolCallEnd(id=tool_blocks.pop(index))

                elif event_type == "message_delta":
                    usage.update(chunk.get("usage", {}))
                    stop_reason = chunk.get("delta", {}).get("stop_reason")

            if cancelled.is_set():
                return
            yield StreamDone(stop_reason=stop_reason, usage=usage)
        finally:
            cancelled.set()
            # unblock an executor thread still waiting on the queue
            chunk_queue.put(None)
            if self._cancel_event is cancelled:
                self._cancel_event = None

    def test_connection(self) -> tuple:
        """Test the Bedrock connection"""
        try:
            body = {
                "anthropic_version": "bedrock-2023-05-31",
                "max_tokens": 10,
                "messages": [{"role": "user", "content": "Hi"}],
            }
            self.client.invoke_model(
                modelId=self._get_model_identifier(self.model_id),
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            return True, "Connection successful"
        except (ClientError, EndpointConnectionError, ReadTimeoutError, NoCredentialsError) as e:
            return False, classify_error(e).message

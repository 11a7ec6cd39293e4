from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    Calls the underlying LLM runnable and normalizes the raw output into the
    declared Pydantic schema.
    """

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, *, system_prompt: str, user_prompt: str) -> ModelT:
        """Send one system + user exchange and return a validated schema instance.

        Raises:
            RuntimeError: If the LLM returns unparseable or invalid output.
        """
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        raw_output = await self.runnable.ainvoke(messages)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional workspace root to search for a .env file.

    Returns:
        The API key string.

    Raises:
        ProviderUnavailable: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ProviderUnavailable(
            "OpenAI API key not configured. Set OPENAI_API_KEY in the environment or the workspace .env file."
        )
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Accepts a Pydantic instance (same or different schema) or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json", by_alias=True)
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(
            f"Structured output validation failed for {schema.__name__}: {exc}"
        ) from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter that invokes the LLM with schema-constrained output.

    Uses ``ChatOpenAI.with_structured_output`` with function calling to bind
    the schema to the model.

    Raises:
        ProviderUnavailable: If OPENAI_API_KEY is not available.
    """
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method="function_calling",
        strict=strict,
    )
    logger.debug("Bound %s to %s (strict=%s)", schema.__name__, model_name, strict)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)

import asyncio
import base64
import io
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError
from pypdf import PdfReader

from .schemas import (
    AnalysisStatus,
    AnalyzedFile,
    ChatMessage,
    DocumentAnalysis,
    OutlierReport,
    ReportStructure,
    ThematicStatus,
)

logger = logging.getLogger(__name__)

MODEL_EXTRACTION = os.getenv("OPENAI_EXTRACTION_MODEL", "gpt-4.1-mini")
MODEL_SYNTHESIS = os.getenv("OPENAI_SYNTHESIS_MODEL", "gpt-4.1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")

RETRY_LIMIT = int(os.getenv("READFORME_RETRY_LIMIT", "5"))
RETRY_DELAY_SECONDS = float(os.getenv("READFORME_RETRY_DELAY", "2.0"))

OUTLIER_MIN_FILES = 3
CHAT_CONTEXT_TURNS = 4

INSUFFICIENT_FILES_THEME = "Insufficient files for cohesion check"
NO_DOCUMENTS_REPLY = "I need valid, non-outlier documents to analyze before I can answer."
EMPTY_ANSWER_REPLY = "I couldn't generate a response."

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_STATUS_TOKEN = re.compile(r"\b(429|503)\b")


class ServiceError(Exception):
    pass


class ProviderNotConfiguredError(ServiceError):
    pass


class EmptyResponseError(ServiceError):
    pass


class MalformedResponseError(ServiceError):
    pass


class SchemaViolationError(ServiceError):
    pass


class InsufficientHistoryError(ServiceError):
    pass


class AssistantReply(NamedTuple):
    text: str
    sources: list[str]


def _string_array() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "summary": {"type": "string"},
        "key_points": _string_array(),
        "citation_data": {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "journal": {"type": ["string", "null"]},
                "year": {"type": ["string", "null"]},
                "authors": _string_array(),
                "literature_type": {"type": "string", "enum": ["Primary Research", "Review Article", "Other"]},
                "main_topic": {"type": "string"},
            },
            "required": ["title", "journal", "year", "authors", "literature_type", "main_topic"],
            "additionalProperties": False,
        },
        "thematic_tags": _string_array(),
    },
    "required": ["title", "summary", "key_points", "citation_data", "thematic_tags"],
    "additionalProperties": False,
}

OUTLIER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "main_theme": {"type": "string", "description": "The dominant scientific theme of the group"},
        "outliers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "filename": {"type": "string"},
                    "reason": {"type": "string", "description": "Why this file does not fit the main theme"},
                },
                "required": ["filename", "reason"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["main_theme", "outliers"],
    "additionalProperties": False,
}

REPORT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "background": {"type": "string"},
        "methods": {"type": "string"},
        "results": {"type": "string"},
        "discussion": {"type": "string"},
        "references": _string_array(),
    },
    "required": ["background", "methods", "results", "discussion", "references"],
    "additionalProperties": False,
}


def _json_format(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    return {"format": {"type": "json_schema", "name": name, "schema": schema, "strict": True}}


def _get_client() -> AsyncOpenAI:
    if not OPENAI_API_KEY:
        raise ProviderNotConfiguredError("OPENAI_API_KEY is not configured.")
    # Retries are handled by retry_with_backoff only.
    return AsyncOpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL, max_retries=0)


def is_transient_error(exc: BaseException) -> bool:
    """Rate-limit (429 / quota exhaustion) or overload (503) signatures."""
    codes = {getattr(exc, attr, None) for attr in ("status_code", "status", "code")}
    message = str(exc)
    if codes & {429, 503} or _STATUS_TOKEN.search(message):
        return True
    return "quota" in message.lower() or "RESOURCE_EXHAUSTED" in message


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = RETRY_LIMIT,
    delay: float = RETRY_DELAY_SECONDS,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    while True:
        try:
            return await operation()
        except Exception as exc:
            if retries <= 0 or not is_transient_error(exc):
                raise
            logger.warning("Model API limit hit. Retrying in %.1fs (%d retries left)...", delay, retries)
            await sleep(delay)
            delay *= 2
            retries -= 1


def _parse_json_from_text(text: str) -> dict[str, Any]:
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            pass
    raise MalformedResponseError("Model response did not contain valid JSON.")


def _validate_output(response: Any, model: type[M]) -> M:
    text = getattr(response, "output_text", None)
    if not text or not text.strip():
        raise EmptyResponseError("No response text from model.")
    data = _parse_json_from_text(text)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SchemaViolationError(f"Model response does not match {model.__name__}: {exc}") from exc


def _trim_text(text: str, max_chars: int = 120000) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def count_pdf_pages(content: bytes) -> int | None:
    try:
        return len(PdfReader(io.BytesIO(content)).pages)
    except Exception:
        return None


def extract_grounding_sources(response: Any) -> list[tuple[str, str]]:
    """Collect (title, url) pairs from url_citation annotations, first occurrence wins."""
    sources: dict[str, str] = {}
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message":
            continue
        for part in getattr(item, "content", None) or []:
            for annotation in getattr(part, "annotations", None) or []:
                if getattr(annotation, "type", None) != "url_citation":
                    continue
                url = getattr(annotation, "url", None)
                if url and url not in sources:
                    sources[url] = getattr(annotation, "title", None) or url
    return [(title, url) for url, title in sources.items()]


ANALYSIS_PROMPT = (
    "Analyze this PDF. Extract metadata for APA citation, determine if it is Primary Research "
    "or Review, and summarize key scientific findings. Use main_topic for the scientific field "
    "and sub-field the paper belongs to."
)


async def analyze_document(content: bytes, filename: str) -> DocumentAnalysis:
    encoded = base64.b64encode(content).decode("ascii")

    async def _call() -> DocumentAnalysis:
        client = _get_client()
        response = await client.responses.create(
            model=MODEL_EXTRACTION,
            input=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "input_file",
                            "filename": filename,
                            "file_data": f"data:application/pdf;base64,{encoded}",
                        },
                        {"type": "input_text", "text": ANALYSIS_PROMPT},
                    ],
                }
            ],
            text=_json_format("document_analysis", ANALYSIS_SCHEMA),
            temperature=0.1,
        )
        return _validate_output(response, DocumentAnalysis)

    return await retry_with_backoff(_call)


def _outlier_prompt(files: list[AnalyzedFile]) -> str:
    blocks = []
    for f in files:
        result = f.result
        blocks.append(
            f"Filename: {f.filename}\n"
            f"Title: {result.title if result else ''}\n"
            f"Topic: {result.citation_data.main_topic if result else ''}\n"
            f"Type: {result.citation_data.literature_type if result else ''}"
        )
    summaries = "\n---\n".join(blocks)
    return (
        "Analyze the following list of scientific documents.\n"
        '1. Identify the dominant scientific theme (e.g., "Immunology: T-Cell Exhaustion" or '
        '"Machine Learning: Transformers").\n'
        "2. Identify any outliers. An outlier is a paper that belongs to a completely different field "
        "(e.g., a cardiovascular paper in an immunology folder).\n"
        "3. Strictly distinguish between Primary Literature and Reviews. If the topic is the same, "
        "it is NOT an outlier.\n"
        "Report outliers by their exact filename.\n\n"
        f"Documents:\n{summaries}"
    )


async def detect_outliers(files: list[AnalyzedFile]) -> OutlierReport:
    if len(files) < OUTLIER_MIN_FILES:
        return OutlierReport(main_theme=INSUFFICIENT_FILES_THEME, outliers=[])

    prompt = _outlier_prompt(files)

    async def _call() -> OutlierReport:
        client = _get_client()
        response = await client.responses.create(
            model=MODEL_EXTRACTION,
            input=prompt,
            text=_json_format("outlier_report", OUTLIER_SCHEMA),
            temperature=0.1,
        )
        return _validate_output(response, OutlierReport)

    return await retry_with_backoff(_call)


def eligible_files(files: list[AnalyzedFile]) -> list[AnalyzedFile]:
    return [
        f
        for f in files
        if f.status == AnalysisStatus.COMPLETED and f.result is not None and f.thematic_status != ThematicStatus.OUTLIER
    ]


def _render_corpus(files: list[AnalyzedFile]) -> str:
    parts: list[str] = []
    for f in files:
        result = f.result
        parts.append(
            f"[ID: {f.id}]\n"
            f"Title: {result.title}\n"
            f"Authors: {', '.join(result.citation_data.authors)} ({result.citation_data.year or 'n.d.'})\n"
            f"Summary: {result.summary}\n"
            f"Key Points: {'; '.join(result.key_points)}"
        )
    return "\n\n".join(parts)


def _render_history(history: list[ChatMessage]) -> str:
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in history[-CHAT_CONTEXT_TURNS:])


async def ask_assistant(question: str, files: list[AnalyzedFile], history: list[ChatMessage]) -> AssistantReply:
    """Answer a question from the project corpus, falling back to web search for gaps.

    ``history`` holds the turns before ``question``; only the most recent few are
    forwarded. External sources found by the search tool are appended to the
    answer as markdown links and returned separately.
    """
    usable = eligible_files(files)
    if not usable:
        return AssistantReply(NO_DOCUMENTS_REPLY, [])

    prompt = (
        "You are Mike, a senior scientific research assistant.\n"
        f'User Question: "{question}"\n\n'
        "Research Context (from the uploaded project):\n"
        f"{_trim_text(_render_corpus(usable))}\n\n"
        "Chat History:\n"
        f"{_render_history(history)}\n\n"
        "Instructions:\n"
        "1. Answer the user's question by SYNTHESIZING information from the provided documents. "
        "Do not just list summaries.\n"
        "2. You MUST cite your sources using strict APA format in-text (Author, Year) when making claims.\n"
        "3. If the answer is NOT in the documents, perform a GAP ANALYSIS: use web search to find the "
        "missing information and prioritize peer-reviewed literature over generic websites.\n"
        "4. Return your response in a clear, structured Markdown format.\n"
        "5. At the end, list the full APA References for any papers cited."
    )

    async def _call() -> AssistantReply:
        client = _get_client()
        response = await client.responses.create(
            model=MODEL_SYNTHESIS,
            input=prompt,
            tools=[{"type": "web_search_preview"}],
            temperature=0.3,
        )
        text = (getattr(response, "output_text", None) or "").strip() or EMPTY_ANSWER_REPLY
        grounding = extract_grounding_sources(response)
        if grounding:
            text += "\n\n*External Sources Consulted:*"
            for title, url in grounding:
                text += f"\n- [{title}]({url})"
        return AssistantReply(text, [url for _, url in grounding])

    return await retry_with_backoff(_call)


async def generate_report_structure(history: list[ChatMessage]) -> ReportStructure:
    answers = [m.content for m in history if m.role != "user"]
    if not answers:
        raise InsufficientHistoryError("No chat history to synthesize.")
    conversation = _trim_text("\n\n".join(answers))

    prompt = (
        "I have a series of Q&A responses about a scientific topic.\n"
        "Re-organize this unstructured information into a formal Scientific Report structure.\n"
        "Ignore the chronological order of the questions. Group facts logically.\n\n"
        "Input Text:\n"
        f"{conversation}\n\n"
        "Output Requirement:\n"
        "- background: Synthesize introduction and background info.\n"
        "- methods: Synthesize any experimental methods discussed.\n"
        "- results: Synthesize findings and data.\n"
        "- discussion: Synthesize conclusions, gaps, and future directions.\n"
        "- references: A consolidated list of all APA references mentioned."
    )

    async def _call() -> ReportStructure:
        client = _get_client()
        response = await client.responses.create(
            model=MODEL_SYNTHESIS,
            input=prompt,
            text=_json_format("report_structure", REPORT_SCHEMA),
            temperature=0.2,
        )
        return _validate_output(response, ReportStructure)

    return await retry_with_backoff(_call)

import json
import logging
import os
import re
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from openai import AsyncOpenAI
from pydantic import ValidationError

from taskengine.config import config
from taskengine.task_schema import ExtractedTask, IncomingMessage

logger = logging.getLogger(__name__)


@runtime_checkable
class SemanticClassifier(Protocol):
    """The three capabilities the engine needs from a language model."""

    async def extract_tasks(self, message: IncomingMessage) -> List[ExtractedTask]:
        ...

    async def compare_similarity(self, text1: str, text2: str) -> float:
        ...

    async def summarize(self, descriptions: Sequence[str]) -> str:
        ...


SYSTEM_PROMPT = "You are an assistant that turns email threads into clear, actionable tasks."

EXTRACTION_PROMPT = """Analyze this email for actionable tasks.

Email Details:
Subject: {subject}
From: {sender}
Content:
\"\"\"
{body}
\"\"\"

Extract tasks following these rules:
1. Only include clear, actionable items
2. Determine priority based on:
   - HIGH: Urgent or time-sensitive items
   - MEDIUM: Important but not urgent
   - LOW: Nice to have or can be delayed
3. Set a deadline (ISO 8601) only when the email states or implies one
4. List prerequisites in "dependencies", using the exact description of the prerequisite task

Return JSON:
{{
  "tasks": [
    {{
      "description": "<task description>",
      "deadline": null,
      "priority": "HIGH|MEDIUM|LOW",
      "dependencies": [],
      "context": "<relevant context from the email>"
    }}
  ]
}}

If no tasks are found, return {{"tasks": []}}."""

SIMILARITY_PROMPT = """Compare these tasks for similarity:

Task 1: {task1}
Task 2: {task2}

Consider:
1. Core objective similarity
2. Required actions similarity
3. Context and scope overlap
4. Dependencies and relationships

Return ONLY a number between 0 and 1, where:
1.0 = identical tasks
0.0 = completely different tasks
>0.8 = very similar tasks
>0.5 = somewhat related tasks
<0.3 = different tasks"""

SUMMARY_PROMPT = """Create a parent task description that encompasses these related tasks:

Tasks:
{tasks}

Guidelines:
1. Create a clear, concise parent task description
2. Capture the common objective
3. Keep it actionable
4. Include scope of subtasks

Return ONLY the parent task description in a single line."""

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def _attempt_json_repair(raw: str) -> Optional[dict]:
    """
    Safety Fallback: Attempts to repair malformed JSON from the LLM.
    Useful for common issues like markdown fences or trailing commas
    that break standard json.loads().
    """
    # Strip markdown fences
    cleaned = re.sub(r'^```(?:json)?\s*', '', (raw or "").strip())
    cleaned = re.sub(r'\s*```$', '', cleaned)

    # Strip non-printable control characters (except newlines/tabs)
    cleaned = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', cleaned)

    # Fix trailing commas before } or ]
    cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return None


def parse_task_payload(raw: str) -> Optional[List[ExtractedTask]]:
    """
    Turns a model response into validated tasks.

    Returns None when the payload cannot be read as JSON at all, so the
    caller can decide to regenerate. Individual malformed items are skipped.
    """
    parsed = None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        parsed = _attempt_json_repair(raw)
    if parsed is None:
        return None

    if isinstance(parsed, dict):
        items = parsed.get('tasks', [])
    elif isinstance(parsed, list):
        items = parsed
    else:
        items = []
    if not isinstance(items, list):
        logger.warning("Classifier returned non-list tasks payload: %r", items)
        return []

    tasks: List[ExtractedTask] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            tasks.append(ExtractedTask(**item))
        except ValidationError:
            logger.debug("Skipping malformed task item: %r", item)
    return tasks


def parse_similarity_score(raw: str) -> float:
    """First number in the response, or NaN when there is none."""
    match = _NUMBER.search(raw or "")
    return float(match.group(0)) if match else float("nan")


class LLMClassifier:
    """
    SemanticClassifier backed by an OpenAI-compatible chat endpoint
    (OpenAI or Groq, resolved from the environment like the rest of the
    pipeline).
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 client: Optional[AsyncOpenAI] = None):
        openai_key = os.environ.get("OPENAI_API_KEY")
        groq_key = config['groq_api_key']

        resolved_key = api_key or openai_key or groq_key

        if resolved_key and (resolved_key.startswith("sk-") or "openai" in str(api_key).lower()):
            base_url = "https://api.openai.com/v1"
            self.model = model or os.environ.get("OPENAI_MODEL", "gpt-4o")
        else:
            base_url = "https://api.groq.com/openai/v1"
            self.model = model or config['model']

        if client is not None:
            self.client = client
        else:
            if not resolved_key:
                raise ValueError("No API key provided. Check your .env file.")
            self.client = AsyncOpenAI(api_key=resolved_key, base_url=base_url)

    async def _complete(self, prompt: str, json_mode: bool = False) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=config['temperature'],
            max_tokens=config['max_tokens'],
            timeout=config['timeout'],
            **kwargs,
        )
        return response.choices[0].message.content or ""

    async def extract_tasks(self, message: IncomingMessage, is_retry: bool = False) -> List[ExtractedTask]:
        """
        Extracts candidate tasks from one message. Malformed output is
        regenerated once; a second failure yields an empty list.
        """
        prompt = EXTRACTION_PROMPT.format(
            subject=message.subject or "",
            sender=message.from_address or "",
            body=message.body or "",
        )
        try:
            raw_json = await self._complete(prompt, json_mode=True)
        except Exception as exc:
            if not is_retry:
                logger.warning("Task extraction call failed (%s), regenerating", exc)
                return await self.extract_tasks(message, is_retry=True)
            logger.error("Task extraction failed for message %s: %s", message.id, exc)
            return []

        tasks = parse_task_payload(raw_json)
        if tasks is None:
            if not is_retry:
                logger.warning("Malformed task JSON for message %s, regenerating", message.id)
                return await self.extract_tasks(message, is_retry=True)
            logger.error("Regeneration failed for message %s, no tasks extracted", message.id)
            return []

        logger.info("Extracted %d tasks from message %s (model=%s)", len(tasks), message.id, self.model)
        return tasks

    async def compare_similarity(self, text1: str, text2: str) -> float:
        raw = await self._complete(SIMILARITY_PROMPT.format(task1=text1 or "", task2=text2 or ""))
        return parse_similarity_score(raw)

    async def summarize(self, descriptions: Sequence[str]) -> str:
        tasks_text = "\n".join(f"{i + 1}. {d}" for i, d in enumerate(descriptions))
        raw = await self._complete(SUMMARY_PROMPT.format(tasks=tasks_text))
        lines = [line.strip() for line in raw.strip().splitlines() if line.strip()]
        return lines[0] if lines else ""

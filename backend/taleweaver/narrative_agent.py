import base64
import binascii
import json
import logging
import os

from google import genai
from google.genai import types
from pydantic import ValidationError

from taleweaver.errors import GenerationFailure, ImageEncodingFailure, MalformedResponse
from taleweaver.models import HistoryEntry, ImagePart, StorySegment

logger = logging.getLogger(__name__)

_MODEL = os.getenv("TALEWEAVER_MODEL", "gemini-2.5-flash")
_TEMPERATURE = float(os.getenv("TALEWEAVER_TEMPERATURE", "0.8"))

_RESPONSE_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "storySegment": types.Schema(
            type=types.Type.STRING,
            description=(
                "The next paragraph of the story. It should be engaging and "
                "well-written, continuing from the previous part."
            ),
        ),
        "choices": types.Schema(
            type=types.Type.ARRAY,
            description=(
                "An array of 2 to 3 distinct and interesting choices for the user "
                "to pick from to continue the story. Each choice should be a short, "
                "actionable phrase. Return an empty array only if the story has ended."
            ),
            items=types.Schema(type=types.Type.STRING),
        ),
    },
    required=["storySegment", "choices"],
)

_CONTINUE_INSTRUCTION = """You are an expert storyteller continuing an interactive story.
- The story context is provided below.
- The user has just made a choice. Your task is to write the next part of the story based on that choice.
- Generate a single, compelling paragraph that continues the narrative.
- After the story segment, provide 2 or 3 new, distinct choices for the user.
- Your entire response MUST be a valid JSON object matching the provided schema."""

# Lazy singleton — created after load_dotenv() has run
_client: genai.Client | None = None


def _get_client() -> genai.Client:
    global _client
    if _client is None:
        api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
        _client = genai.Client(api_key=api_key)
    return _client


def _setup_phoenix() -> None:
    """Trace Gemini calls into Phoenix when PHOENIX_COLLECTOR_ENDPOINT is set."""
    endpoint = os.environ.get("PHOENIX_COLLECTOR_ENDPOINT")
    if not endpoint:
        return
    try:
        from openinference.instrumentation.google_genai import GoogleGenAIInstrumentor
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk import trace as trace_sdk
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        tracer_provider = trace_sdk.TracerProvider()
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
        )
        GoogleGenAIInstrumentor().instrument(tracer_provider=tracer_provider)
        logger.info("Phoenix tracing enabled → %s", endpoint)
    except Exception as exc:
        logger.warning("Phoenix tracing unavailable: %s", exc)


_setup_phoenix()


def parse_segment_response(text: str | None) -> StorySegment:
    """Decode the model's JSON answer into a StorySegment, or raise MalformedResponse."""
    # Strip markdown fences if model wraps JSON in ```json ... ```
    raw = (text or "").strip().removeprefix("```json").removeprefix("```").removesuffix("```").strip()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON response: {raw[:200]!r}")
        raise MalformedResponse("The AI returned a response in an unexpected format.") from e
    if not isinstance(data, dict):
        raise MalformedResponse("The AI returned a response in an unexpected format.")
    try:
        return StorySegment.model_validate(data)
    except ValidationError as e:
        logger.error(f"Story response failed validation: {e}")
        raise MalformedResponse("The AI returned a response in an unexpected format.") from e


def render_history(history: list[HistoryEntry]) -> str:
    """Flatten root-first history into the narrative context sent to the model.

    The first entry's choice is the premise; later choices are shown between the
    segments they connect so the model sees why the story turned.
    """
    blocks: list[str] = []
    for i, entry in enumerate(history):
        if i == 0:
            blocks.append(f'Premise: "{entry.choice}"')
        else:
            blocks.append(f'> The reader chose: "{entry.choice}"')
        blocks.append(entry.segment)
    return "\n\n".join(blocks)


async def _generate(contents, system_instruction: str) -> StorySegment:
    try:
        response = await _get_client().aio.models.generate_content(
            model=_MODEL,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                response_mime_type="application/json",
                response_schema=_RESPONSE_SCHEMA,
                temperature=_TEMPERATURE,
            ),
        )
    except Exception as e:
        logger.error(f"Gemini request failed: {e}")
        raise GenerationFailure(f"Story generation failed: {e}") from e
    return parse_segment_response(response.text)


async def generate_initial_story(
    premise: str,
    genre: str,
    tone: str,
    image: ImagePart | None = None,
) -> StorySegment:
    system_instruction = f"""You are an expert storyteller. Your task is to co-write an interactive story with a user.
- The story should be in the "{genre}" genre.
- The tone should be "{tone}".
- Always generate a single, compelling paragraph for the story segment.
- After the story segment, provide 2 or 3 distinct, engaging choices for the user to direct the story.
- Your entire response MUST be a valid JSON object matching the provided schema."""

    prompt = f'Start a new story based on this premise: "{premise}".'
    if image is None:
        return await _generate(prompt, system_instruction)

    try:
        image_bytes = base64.b64decode(image.data, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Inspiration image is not valid base64: {e}")
        raise ImageEncodingFailure("Could not process the image file.") from e

    prompt += " Use the provided image as inspiration for the setting or mood."
    contents = [
        types.Part.from_bytes(data=image_bytes, mime_type=image.mime_type),
        prompt,
    ]
    return await _generate(contents, system_instruction)


async def generate_story_segment(history: list[HistoryEntry], choice: str) -> StorySegment:
    prompt = f"""STORY SO FAR:
---
{render_history(history)}
---

USER'S CHOICE: "{choice}"

Now, continue the story."""
    return await _generate(prompt, _CONTINUE_INSTRUCTION)

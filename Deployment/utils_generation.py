import base64
import json
import re
import config_master as config
from groq import Groq
from utils_notation import (
    AnalysisResult, QUADRANT_ORDER, clean_quadrant_input, sort_quadrant_teeth
)


class LLMOutputError(ValueError):
    """The model answered, but not with the JSON we asked for."""


#  LLM Output Cleaning

def clean_llm_output(raw_text: str) -> str:
    """Strips the <think>...</think> block from the start of an LLM response."""
    match = re.search(r'</think>(.*)', raw_text, re.DOTALL | re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return raw_text.strip()

def extract_json(raw_text: str) -> dict:
    """Parses a JSON object from model output, tolerating think blocks and ``` fences."""
    text = clean_llm_output(raw_text or "")
    fenced = re.search(r'```(?:json)?\s*(.*?)```', text, re.DOTALL | re.IGNORECASE)
    if fenced:
        text = fenced.group(1).strip()
    if not text.startswith('{'):
        start, end = text.find('{'), text.rfind('}')
        if start == -1 or end <= start:
            raise LLMOutputError(f"No JSON object in model output: {text[:80]!r}")
        text = text[start:end + 1]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise LLMOutputError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LLMOutputError("Model output is not a JSON object.")
    return data


#  Groq Requests

def _json_completion(client: Groq, messages: list, model_id: str) -> dict:
    chat_completion = client.chat.completions.create(
        messages=messages,
        model=model_id,
        temperature=config.LLM_TEMPERATURE,
        max_tokens=config.LLM_MAX_TOKENS,
        response_format={"type": "json_object"},
        stream=False
    )
    content = chat_completion.choices[0].message.content
    if not content:
        raise LLMOutputError("Groq API returned no content.")
    return extract_json(content)

def image_data_url(image_bytes: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(image_bytes).decode('ascii')
    return f"data:{mime_type};base64,{encoded}"

def analyze_dental_image(client: Groq, image_bytes: bytes, mime_type: str,
                         model_id: str = config.VISION_MODEL_ID) -> AnalysisResult:
    """
    Sends a handwritten Palmer chart to the vision model and returns its findings.
    The model's own combined description is discarded and regenerated locally so
    teeth always read from the midline outward.
    GroqError propagates to the caller, which owns key rotation.
    """
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": config.IMAGE_ANALYSIS_PROMPT},
                {"type": "image_url", "image_url": {"url": image_data_url(image_bytes, mime_type)}},
            ],
        }
    ]
    data = _json_completion(client, messages, model_id)
    return AnalysisResult.from_dict(data)

def parse_description_to_chart(client: Groq, description: str,
                               model_id: str = config.TEXT_MODEL_ID) -> dict:
    """Free text ('右上654，左下第一磨牙') -> sorted {UR, UL, LR, LL} symbol strings."""
    messages = [
        {"role": "system", "content": config.CHART_PARSE_PROMPT},
        {"role": "user", "content": f'输入描述： "{description}"'},
    ]
    data = _json_completion(client, messages, model_id)
    return {
        quad.code: sort_quadrant_teeth(clean_quadrant_input(str(data.get(quad.code) or "")), quad)
        for quad in QUADRANT_ORDER
    }

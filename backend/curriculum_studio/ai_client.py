"""Client for the remote model used for translation and PDF extraction.

Any chat-completions style endpoint works. Recoverable failures (empty
answer, unparsable JSON) come back as ``None``; transport failures raise
``AIServiceError``.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Optional

import requests
from pydantic import BaseModel

from curriculum_studio import config, store
from curriculum_studio.errors import Outcome, not_found, success
from curriculum_studio.models import (
    LANGUAGES,
    AssessmentItem,
    Course,
    CourseTopic,
    ProgramState,
    TeachingMethod,
    TopicActivity,
    coerce_localized,
    new_id,
)


logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"vi": "Vietnamese", "en": "English"}
ACTIVITY_CODES = {"lecture": "LEC", "lab": "LAB", "laboratory": "LAB", "discussion": "DIS", "project": "PRJ"}

SYLLABUS_PROMPT = """Analyze this Course Syllabus PDF. Extract structured data.
Return a JSON object with this exact structure:
{
  "description": { "vi": "...", "en": "..." },
  "clos": { "vi": ["..."], "en": ["..."] },
  "topics": [
    { "no": "1", "topic": { "vi": "...", "en": "..." },
      "activities": [ { "type": "Lecture" | "Lab" | "Project" | "Discussion", "hours": 0 } ] }
  ],
  "assessmentPlan": [ { "type": { "vi": "...", "en": "..." }, "percentile": 0 } ]
}
If hours for activities are not explicit, estimate based on credit hours or set to 0.
Try to translate content to both Vietnamese and English where possible."""


class AIServiceError(RuntimeError):
    pass


class AIConfig(BaseModel):
    url: str = ""
    model: str = ""
    api_key: str = ""
    timeout: float = 60
    translation_prompt: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "AIConfig":
        return cls(url=config.AI_URL, model=config.AI_MODEL, api_key=config.AI_KEY, timeout=config.AI_TIMEOUT)


def _strip_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text or "").strip()


class AIClient:
    def __init__(self, settings: Optional[AIConfig] = None, session: Optional[requests.Session] = None):
        self.settings = settings or AIConfig.from_settings()
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.url)

    def complete(self, content, json_mode: bool = False) -> str:
        if not self.enabled:
            raise AIServiceError("AI service is not configured")
        payload = {"model": self.settings.model, "messages": [{"role": "user", "content": content}]}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.settings.api_key}"} if self.settings.api_key else {}
        try:
            response = self.session.post(self.settings.url, json=payload, headers=headers, timeout=self.settings.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as exc:
            logger.warning("AI request failed: %s", exc)
            raise AIServiceError(str(exc)) from exc
        except ValueError as exc:
            logger.warning("AI service answered with a non-JSON body")
            raise AIServiceError("AI service answered with a non-JSON body") from exc
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            logger.warning("AI response had no message content")
            return ""

    def complete_json(self, content):
        text = _strip_fences(self.complete(content, json_mode=True))
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("AI response was not valid JSON")
            return None

    def translate_text(self, text: str, target_language: str) -> Optional[str]:
        if target_language not in LANGUAGES:
            raise ValueError(f"Unsupported language '{target_language}'")
        if not (text or "").strip():
            return None
        language_name = LANGUAGE_NAMES[target_language]
        if self.settings.translation_prompt:
            prompt = self.settings.translation_prompt.replace("{targetLanguage}", language_name).replace("{text}", text)
        else:
            prompt = f'Translate the following text to {language_name}. Return only the translation: "{text}"'
        out = self.complete(prompt).strip().strip('"').strip()
        return out or None

    def translate_batch(self, items: dict[str, str], target_language: str) -> Optional[dict[str, str]]:
        if target_language not in LANGUAGES:
            raise ValueError(f"Unsupported language '{target_language}'")
        if not items:
            return {}
        prompt = (
            f"Translate the following JSON object values to {LANGUAGE_NAMES[target_language]}. "
            f"Return ONLY the JSON object.\nSource: {json.dumps(items, ensure_ascii=False)}"
        )
        data = self.complete_json(prompt)
        if not isinstance(data, dict):
            return None
        return {k: v.strip() for k, v in data.items() if k in items and isinstance(v, str) and v.strip()}

    def import_from_pdf(self, base64_pdf: str, prompt: str = SYLLABUS_PROMPT) -> Optional[dict]:
        content = [
            {"type": "file", "file": {"filename": "upload.pdf", "file_data": f"data:application/pdf;base64,{base64_pdf}"}},
            {"type": "text", "text": prompt},
        ]
        data = self.complete_json(content)
        return data if isinstance(data, dict) and data else None


def _source_language(target_language: str) -> str:
    return "en" if target_language == "vi" else "vi"


def missing_course_strings(course: Course, target_language: str) -> dict[str, str]:
    """Source texts whose target-language counterpart is still empty.

    Topics and assessment items are keyed by id, CLOs by position.
    """
    source = _source_language(target_language)
    items: dict[str, str] = {}
    if course.description.get(source) and not course.description.get(target_language):
        items["description"] = course.description.get(source)
    for topic in course.topics:
        if topic.topic.get(source) and not topic.topic.get(target_language):
            items[f"topic_{topic.id}"] = topic.topic.get(source)
    for item in course.assessment_plan:
        if item.type.get(source) and not item.type.get(target_language):
            items[f"assess_{item.id}"] = item.type.get(source)
    source_clos = course.clos.for_language(source)
    target_clos = course.clos.for_language(target_language)
    for i, text in enumerate(source_clos):
        if text and (i >= len(target_clos) or not target_clos[i]):
            items[f"clo_{i}"] = text
    return items


def apply_course_translation(course: Course, target_language: str, translations: dict[str, str]) -> Course:
    """Copy of ``course`` with each translation written into its target slot if that slot is still empty."""
    out = course.model_copy(deep=True)
    topics = {t.id: t for t in out.topics}
    assessments = {a.id: a for a in out.assessment_plan}
    source_size = len(out.clos.for_language(_source_language(target_language)))
    for key, value in translations.items():
        if not value:
            continue
        kind, _, ref = key.partition("_")
        if kind == "description":
            if not out.description.get(target_language):
                out.description = out.description.with_text(target_language, value)
        elif kind == "topic" and ref in topics:
            topic = topics[ref]
            if not topic.topic.get(target_language):
                topic.topic = topic.topic.with_text(target_language, value)
        elif kind == "assess" and ref in assessments:
            item = assessments[ref]
            if not item.type.get(target_language):
                item.type = item.type.with_text(target_language, value)
        elif kind == "clo" and ref.isdigit() and int(ref) < source_size:
            idx = int(ref)
            texts = getattr(out.clos, target_language)
            while len(texts) <= idx:
                texts.append("")
            if not texts[idx]:
                texts[idx] = value
    return out


def translate_course(client: AIClient, course: Course, target_language: str) -> Optional[dict[str, str]]:
    """Translate the missing target-language syllabus text in one batch; None means nothing to write."""
    items = missing_course_strings(course, target_language)
    if not items:
        return None
    return client.translate_batch(items, target_language) or None


def _merge_into_course(state: ProgramState, course_id: str, merge) -> Outcome:
    idx = next((i for i, c in enumerate(state.courses) if c.id == course_id), None)
    if idx is None:
        return not_found(state, "Course", course_id)
    new = store.clone(state)
    new.courses[idx] = merge(new.courses[idx], new)
    return success(new)


def merge_course_translation(state: ProgramState, course_id: str, target_language: str, translations: dict[str, str]) -> Outcome:
    return _merge_into_course(state, course_id, lambda course, _: apply_course_translation(course, target_language, translations))


def merge_imported_syllabus(state: ProgramState, course_id: str, data: dict) -> Outcome:
    return _merge_into_course(state, course_id, lambda course, s: apply_imported_syllabus(course, data, s.teaching_methods))


def apply_imported_syllabus(course: Course, data: dict, teaching_methods: list[TeachingMethod]) -> Course:
    """Merge an extracted syllabus into a copy of ``course``; absent sections are left alone."""
    out = course.model_copy(deep=True)
    description = data.get("description")
    if isinstance(description, dict):
        out.description = out.description.model_validate({**out.description.model_dump(), **description})
    clos = data.get("clos")
    if isinstance(clos, dict):
        for lang in LANGUAGES:
            texts = clos.get(lang)
            if isinstance(texts, list) and texts:
                setattr(out.clos, lang, [str(t) for t in texts])
        size = out.clos.max_length()
        out.clo_map = {i: m for i, m in out.clo_map.items() if i < size}
    method_by_code = {m.code.upper(): m.id for m in teaching_methods}
    topics = data.get("topics")
    if isinstance(topics, list) and topics:
        imported = []
        for i, raw in enumerate(topics):
            if not isinstance(raw, dict):
                continue
            activities = []
            for act in raw.get("activities") or []:
                code = ACTIVITY_CODES.get(str(act.get("type", "")).strip().lower())
                method_id = method_by_code.get(code or "")
                if method_id:
                    activities.append(TopicActivity(method_id=method_id, hours=float(act.get("hours") or 0)))
            imported.append(
                CourseTopic(
                    id=new_id("topic"),
                    no=str(raw.get("no") or i + 1),
                    topic=coerce_localized(raw.get("topic") or {}),
                    activities=activities,
                )
            )
        out.topics = imported
        # old topic ids are gone
        for mapping in out.clo_map.values():
            mapping.topic_ids = []
    plan = data.get("assessmentPlan")
    if isinstance(plan, list) and plan:
        out.assessment_plan = [
            AssessmentItem(id=new_id("asm"), type=coerce_localized(item.get("type") or {}), percentile=float(item.get("percentile") or 0))
            for item in plan
            if isinstance(item, dict)
        ]
    return out

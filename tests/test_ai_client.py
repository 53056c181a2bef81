import json

import pytest
import requests

from curriculum_studio import ai_client
from curriculum_studio.ai_client import AIClient, AIConfig, AIServiceError
from curriculum_studio.models import AssessmentItem, CloMapping, CourseTopic


class FakeResponse:
    def __init__(self, payload=None, status=200, body_error=False):
        self.payload = payload
        self.status = status
        self.body_error = body_error

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status} Server Error")

    def json(self):
        if self.body_error:
            raise ValueError("not json")
        return self.payload


class FakeSession:
    def __init__(self, *answers, error=None):
        self.answers = list(answers)
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        answer = self.answers.pop(0)
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse({"choices": [{"message": {"content": answer}}]})


def make_client(*answers, error=None, **settings):
    config = AIConfig(url="http://ai.test/v1/chat/completions", model="test-model", api_key="k", **settings)
    session = FakeSession(*answers, error=error)
    return AIClient(config, session), session


def test_complete_posts_chat_payload():
    client, session = make_client("hello")

    assert client.complete("hi", json_mode=True) == "hello"
    call = session.calls[0]
    assert call["json"]["model"] == "test-model"
    assert call["json"]["messages"] == [{"role": "user", "content": "hi"}]
    assert call["json"]["response_format"] == {"type": "json_object"}
    assert call["headers"] == {"Authorization": "Bearer k"}


def test_disabled_client_raises():
    client = AIClient(AIConfig(), FakeSession())

    assert not client.enabled
    with pytest.raises(AIServiceError):
        client.translate_text("xin chào", "en")


def test_transport_and_http_errors_raise():
    client, _ = make_client(error=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(AIServiceError):
        client.complete("x")

    client, _ = make_client(FakeResponse(status=503))
    with pytest.raises(AIServiceError):
        client.complete("x")

    client, _ = make_client(FakeResponse(body_error=True))
    with pytest.raises(AIServiceError):
        client.complete("x")


def test_missing_content_is_empty():
    client, _ = make_client(FakeResponse({"choices": []}))

    assert client.complete("x") == ""


def test_translate_text_strips_quotes():
    client, session = make_client('"Hello"\n')

    assert client.translate_text("Xin chào", "en") == "Hello"
    assert "English" in session.calls[0]["json"]["messages"][0]["content"]


def test_translate_text_custom_prompt_and_guards():
    client, session = make_client("Chào", translation_prompt="To {targetLanguage}: {text}")

    assert client.translate_text("Hi", "vi") == "Chào"
    assert session.calls[0]["json"]["messages"][0]["content"] == "To Vietnamese: Hi"
    assert client.translate_text("   ", "vi") is None
    with pytest.raises(ValueError):
        client.translate_text("Hi", "fr")


def test_translate_batch_filters_keys_and_fences():
    answer = "```json\n" + json.dumps({"description": " Mô tả ", "extra": "x", "topic_0": ""}) + "\n```"
    client, _ = make_client(answer)

    assert client.translate_batch({"description": "Description", "topic_0": "Intro"}, "vi") == {"description": "Mô tả"}


def test_translate_batch_bad_json_is_none():
    client, _ = make_client("not json at all")

    assert client.translate_batch({"description": "x"}, "vi") is None


def test_translate_course_fills_only_missing_text(state):
    course = state.course("c1")
    course.description.en = "Limits and derivatives"
    course.topics = [CourseTopic(id="t1", topic={"vi": "Đã có", "en": "Limits"})]
    course.assessment_plan = [AssessmentItem(id="a1", type={"vi": "", "en": "Midterm"})]
    course.clos.en = ["Compute limits", "Differentiate"]
    course.clos.vi = ["Tính giới hạn"]
    client, session = make_client(
        json.dumps({"description": "Giới hạn và đạo hàm", "assess_a1": "Giữa kỳ", "clo_1": "Tính đạo hàm"})
    )

    translations = ai_client.translate_course(client, course, "vi")

    sent = session.calls[0]["json"]["messages"][0]["content"]
    assert '"topic_t1"' not in sent
    assert '"assess_a1"' in sent
    translated = ai_client.apply_course_translation(course, "vi", translations)
    assert translated.description.vi == "Giới hạn và đạo hàm"
    assert translated.assessment_plan[0].type.vi == "Giữa kỳ"
    assert translated.clos.vi == ["Tính giới hạn", "Tính đạo hàm"]
    assert translated.topics[0].topic.vi == "Đã có"
    assert course.description.vi == ""


def test_translation_follows_items_by_id_and_keeps_newer_text(state):
    course = state.course("c1")
    course.topics = [
        CourseTopic(id="t-new", topic={"vi": "", "en": "Added later"}),
        CourseTopic(id="t1", topic={"vi": "", "en": "Limits"}),
    ]
    course.description.vi = "Viết tay"
    course.description.en = "Limits"

    out = ai_client.apply_course_translation(course, "vi", {"topic_t1": "Giới hạn", "description": "Máy dịch", "topic_gone": "x"})

    assert [t.topic.vi for t in out.topics] == ["", "Giới hạn"]
    assert out.description.vi == "Viết tay"


def test_merge_course_translation_uses_current_course(state):
    state.course("c1").topics = [CourseTopic(id="t1", topic={"vi": "", "en": "Limits"})]

    outcome = ai_client.merge_course_translation(state, "c1", "vi", {"description": "Giải tích"})

    course = outcome.state.course("c1")
    assert course.description.vi == "Giải tích"
    assert [t.id for t in course.topics] == ["t1"]
    assert state.course("c1").description.vi == ""
    assert ai_client.merge_course_translation(state, "nope", "vi", {}).error.code == "NOT_FOUND"


def test_merge_imported_syllabus_resolves_methods_from_state(state):
    data = {"topics": [{"topic": "Intro", "activities": [{"type": "Lab", "hours": 2}]}]}

    outcome = ai_client.merge_imported_syllabus(state, "c2", data)

    assert outcome.ok
    assert outcome.state.course("c2").topics[0].activities[0].method_id == "tm2"
    assert outcome.state.course("c1") == state.course("c1")


def test_translate_course_nothing_missing(state):
    client, session = make_client()

    assert ai_client.translate_course(client, state.course("c1"), "en") is None
    assert session.calls == []


def test_import_from_pdf_sends_file_part():
    client, session = make_client(json.dumps({"description": {"vi": "a", "en": "b"}}))

    data = client.import_from_pdf("JVBERi0=")

    assert data == {"description": {"vi": "a", "en": "b"}}
    parts = session.calls[0]["json"]["messages"][0]["content"]
    assert parts[0]["file"]["file_data"] == "data:application/pdf;base64,JVBERi0="
    assert parts[1]["text"] == ai_client.SYLLABUS_PROMPT


def test_import_from_pdf_empty_object_is_none():
    client, _ = make_client("{}")

    assert client.import_from_pdf("JVBERi0=") is None


def test_apply_imported_syllabus(state):
    course = state.course("c2")
    course.clos.en = ["a", "b", "c"]
    course.clo_map = {0: CloMapping(topic_ids=["old"], so_ids=["so1"]), 2: CloMapping(so_ids=["so2"])}
    data = {
        "description": {"en": "Imported"},
        "clos": {"vi": ["Một", "Hai"], "en": ["One", "Two"]},
        "topics": [
            {"no": "1", "topic": {"vi": "Mở đầu", "en": "Intro"}, "activities": [{"type": "Lecture", "hours": 3}, {"type": "Seminar", "hours": 2}]},
            {"topic": "Loops", "activities": [{"type": "Lab", "hours": "4"}]},
        ],
        "assessmentPlan": [{"type": {"vi": "Cuối kỳ", "en": "Final"}, "percentile": 50}, "junk"],
    }

    out = ai_client.apply_imported_syllabus(course, data, state.teaching_methods)

    assert out.description.en == "Imported"
    assert out.clos.en == ["One", "Two"]
    assert set(out.clo_map) == {0}
    assert out.clo_map[0].topic_ids == []
    assert out.clo_map[0].so_ids == ["so1"]
    assert [t.no for t in out.topics] == ["1", "2"]
    assert [(a.method_id, a.hours) for a in out.topics[0].activities] == [("tm1", 3)]
    assert [(a.method_id, a.hours) for a in out.topics[1].activities] == [("tm2", 4)]
    assert out.topics[1].topic.en == "Loops"
    assert len(out.assessment_plan) == 1
    assert out.assessment_plan[0].type.en == "Final"
    assert out.assessment_plan[0].percentile == 50
    assert course.clos.en == ["a", "b", "c"]

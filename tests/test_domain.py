"""Tests for learner quiz metadata."""

from __future__ import annotations

from quizcore.domain import (
    QuizMetadata,
    TopicPerformance,
    dump_responses,
    fingerprint_key,
    load_responses,
    quiz_offset,
)
from quizcore.models import QuestionFingerprint, ResponseRecord


CATALOG = {
    "Operations": ["Incident response", "Logging and monitoring"],
    "Architecture": ["Cloud security"],
}


def response(question_id: str, topic: str, is_correct: bool = True, scenario: str = "s") -> ResponseRecord:
    return ResponseRecord(
        question_id=question_id,
        is_correct=is_correct,
        irt_difficulty=0.0,
        irt_discrimination=1.5,
        points_earned=150.0 if is_correct else 0.0,
        max_points=150.0,
        topics=[topic],
        fingerprint=QuestionFingerprint(primary_topic=topic, scenario=scenario, key_concept="k"),
    )


def test_fingerprint_key_normalises_case_and_whitespace():
    model = QuestionFingerprint(primary_topic="Zero Trust", scenario="  remote  access", key_concept="MFA")

    assert fingerprint_key(model) == ("zero trust", "remote access", "mfa")
    assert fingerprint_key({"primary_topic": "zero trust", "scenario": "remote access", "key_concept": "mfa"}) == (
        "zero trust",
        "remote access",
        "mfa",
    )
    assert fingerprint_key(None) is None


def test_topic_performance_thresholds():
    assert TopicPerformance(correct=4, total=5).is_mastered
    assert not TopicPerformance(correct=2, total=2).is_mastered
    assert TopicPerformance(correct=1, total=3).is_struggling
    assert not TopicPerformance(correct=0, total=1).is_struggling
    assert TopicPerformance().accuracy == 0.0


def test_fold_counts_each_batch_as_one_quiz():
    metadata = QuizMetadata()
    responses = [response("q1", "Incident response"), response("q2", "Cloud security", is_correct=False)]

    assert metadata.fold_responses(responses) == 2
    assert metadata.fold_responses(responses) == 0
    assert metadata.total_quizzes_completed == 1

    responses.append(response("q3", "Incident response"))
    assert metadata.fold_responses(responses) == 1
    assert metadata.total_quizzes_completed == 2

    performance = metadata.topic_performance["Incident response"]
    assert (performance.correct, performance.total) == (2, 2)
    coverage = metadata.topic_coverage["Incident response"]
    assert coverage.first_covered_quiz == 1
    assert coverage.last_covered_quiz == 2
    assert metadata.question_history["q2"].correct_history == [False]


def test_phase_two_starts_once_all_topics_are_covered():
    metadata = QuizMetadata()
    metadata.ensure_catalog(CATALOG)
    metadata.fold_responses([response("q1", "Incident response"), response("q2", "Cloud security")])

    assert metadata.uncovered_topics(CATALOG) == ["Logging and monitoring"]
    assert not metadata.check_phase_transition(CATALOG)
    assert metadata.phase == 1

    metadata.fold_responses(
        [
            response("q1", "Incident response"),
            response("q2", "Cloud security"),
            response("q3", "Logging and monitoring"),
        ]
    )
    assert metadata.check_phase_transition(CATALOG)
    assert metadata.phase == 2
    assert metadata.phase1_completed_at == 2
    assert not metadata.check_phase_transition(CATALOG)
    assert metadata.phase == 2


def test_excluded_topics_follow_phase():
    metadata = QuizMetadata()
    metadata.ensure_catalog(CATALOG)
    metadata.fold_responses([response("q1", "Incident response")])
    metadata.fold_responses([response("q1", "Incident response"), response("q2", "Cloud security")])

    assert metadata.excluded_topics() == {"Incident response", "Cloud security"}

    metadata.phase = 2
    assert metadata.excluded_topics() == {"Cloud security"}


def test_recent_fingerprints_respect_cooldown():
    metadata = QuizMetadata()
    history = [response("old", "Incident response", scenario="old")]
    metadata.fold_responses(history)
    for index in range(3):
        history.append(response(f"q{index}", "Cloud security", scenario=f"s{index}"))
        metadata.fold_responses(history)

    recent = metadata.recent_fingerprints(3)

    assert ("incident response", "old", "k") not in recent
    assert ("cloud security", "s0", "k") in recent
    assert len(metadata.recent_fingerprints(10)) == 4


def test_metadata_serialises():
    metadata = QuizMetadata()
    metadata.ensure_catalog(CATALOG)
    metadata.fold_responses([response("q1", "Incident response")])

    restored = QuizMetadata.from_dict(metadata.to_dict())

    assert restored == metadata
    assert QuizMetadata.from_dict(None) == QuizMetadata()


def test_response_history_serialises():
    records = [response("q1", "Incident response")]

    assert load_responses(dump_responses(records)) == records


def test_quiz_offset_rounds_days_to_quizzes():
    assert quiz_offset(0) == 1
    assert quiz_offset(2) == 1
    assert quiz_offset(10) == 5
    assert quiz_offset(14, quizzes_per_week=7) == 14


def test_fold_schedules_topic_reviews():
    metadata = QuizMetadata()

    metadata.fold_responses([response("q1", "Incident response"), response("q2", "Cloud security", is_correct=False)])

    incident = metadata.topic_performance["Incident response"]
    cloud = metadata.topic_performance["Cloud security"]
    assert incident.review["reps"] == 1
    assert cloud.review["reps"] == 1
    assert incident.next_review_quiz >= 2
    assert cloud.next_review_quiz >= 2
    assert not incident.is_due(1)
    assert incident.is_due(incident.next_review_quiz)
    assert not TopicPerformance().is_due(5)


def test_due_topics_order_struggling_first():
    metadata = QuizMetadata(
        topic_performance={
            "Mastered": TopicPerformance(correct=5, total=5, next_review_quiz=2),
            "Learning": TopicPerformance(correct=2, total=3, next_review_quiz=3),
            "Struggling late": TopicPerformance(correct=0, total=3, next_review_quiz=4),
            "Struggling early": TopicPerformance(correct=1, total=4, next_review_quiz=1),
            "Not due": TopicPerformance(correct=0, total=4, next_review_quiz=9),
        }
    )

    assert metadata.topics_due_for_review(4) == ["Struggling early", "Struggling late", "Learning", "Mastered"]


def test_focus_topics_share_slots_between_groups():
    metadata = QuizMetadata(
        total_quizzes_completed=4,
        topic_performance={
            "S1": TopicPerformance(correct=0, total=3, next_review_quiz=3),
            "S2": TopicPerformance(correct=1, total=3, next_review_quiz=4),
            "S3": TopicPerformance(correct=1, total=4, next_review_quiz=5),
            "S4": TopicPerformance(correct=0, total=2, next_review_quiz=5),
            "L1": TopicPerformance(correct=2, total=3, next_review_quiz=5),
            "L2": TopicPerformance(correct=3, total=4, next_review_quiz=5),
            "M1": TopicPerformance(correct=5, total=5, next_review_quiz=2),
        },
    )

    assert metadata.select_focus_topics(5) == ["S1", "S2", "S3", "L1", "L2"]


def test_focus_topics_carry_unused_share_and_skip_excluded():
    metadata = QuizMetadata(
        total_quizzes_completed=4,
        topic_performance={
            "S1": TopicPerformance(correct=0, total=3, next_review_quiz=3),
            "S2": TopicPerformance(correct=0, total=3, next_review_quiz=3),
            "L1": TopicPerformance(correct=2, total=3, next_review_quiz=5),
            "M1": TopicPerformance(correct=5, total=5, next_review_quiz=4),
            "Later": TopicPerformance(correct=5, total=5, next_review_quiz=12),
        },
    )

    focus = metadata.select_focus_topics(5, exclude={"S2"})

    assert focus == ["S1", "L1", "M1", "Later"]
    assert metadata.select_focus_topics(0) == []

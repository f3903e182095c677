from datetime import datetime, timedelta, timezone

import pytest

from factories import AUTHOR_ID, MANUSCRIPT_ID, blocking_declaration, make_manuscript, make_reviewer
from refereeflow.core.errors import FieldUndeterminedError, NotFoundError
from refereeflow.models.matching import DiversityPreferences, MatchingCriteria
from refereeflow.models.reviewer import AssignmentRecord
from refereeflow.services.matching_service import _TrackRecord, availability_score, quality_score


def _seed_pool(store):
    store.add_reviewer(make_reviewer("r-strong", h_index=25, publication_count=80))
    store.add_reviewer(make_reviewer("r-weak", expertise=["marine biology"], h_index=3, publication_count=5))
    store.add_reviewer(make_reviewer("r-busy", current_load=5))
    store.add_reviewer(make_reviewer("r-inactive", is_available=False))
    store.add_reviewer(make_reviewer("r-conflicted"))
    store.record_declared_conflict(blocking_declaration("r-conflicted"))


def _metadata_total(outcome) -> int:
    meta = outcome.metadata
    return (
        len(outcome.matches)
        + meta.excluded_explicit
        + meta.filtered_availability
        + meta.filtered_coi
        + meta.errored
        + meta.ranked_below_limit
    )


@pytest.mark.asyncio
async def test_find_reviewers_filters_and_ranks(services):
    _seed_pool(services.store)

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID), limit=10)

    assert [m.candidate.id for m in outcome.matches] == ["r-strong", "r-weak"]
    assert outcome.total_candidates == 6
    assert outcome.metadata.excluded_explicit == 1
    assert outcome.metadata.filtered_availability == 2
    assert outcome.metadata.filtered_coi == 1
    assert outcome.metadata.field == "Machine Learning"
    assert _metadata_total(outcome) == outcome.total_candidates

    top = outcome.matches[0]
    assert top.relevance_score == 40 + 30 + 5  # field + subfield + "transformers"
    assert "Expertise matches field: Machine Learning" in top.match_reasons
    assert "High h-index (25)" in top.match_reasons


@pytest.mark.asyncio
async def test_find_reviewers_is_deterministic(services):
    _seed_pool(services.store)
    criteria = MatchingCriteria(manuscript_id=MANUSCRIPT_ID, keywords=["attention", "transformers"])

    first = await services.matcher.find_reviewers(criteria, limit=5)
    second = await services.matcher.find_reviewers(criteria, limit=5)

    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_author_never_returned_even_when_conflicted_included(services):
    _seed_pool(services.store)

    outcome = await services.matcher.find_reviewers(
        MatchingCriteria(manuscript_id=MANUSCRIPT_ID, include_conflicted=True), limit=50
    )

    ids = [m.candidate.id for m in outcome.matches]
    assert AUTHOR_ID not in ids
    assert "r-conflicted" in ids
    conflicted = next(m for m in outcome.matches if m.candidate.id == "r-conflicted")
    assert conflicted.coi.is_eligible is False
    assert "Not eligible: conflict of interest" in conflicted.match_reasons
    assert _metadata_total(outcome) == outcome.total_candidates


@pytest.mark.asyncio
async def test_limit_is_recorded_in_metadata(services):
    _seed_pool(services.store)

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID), limit=1)

    assert len(outcome.matches) == 1
    assert outcome.metadata.ranked_below_limit == 1
    assert _metadata_total(outcome) == outcome.total_candidates


@pytest.mark.asyncio
async def test_criteria_exclusions_and_floors(services):
    _seed_pool(services.store)

    outcome = await services.matcher.find_reviewers(
        MatchingCriteria(manuscript_id=MANUSCRIPT_ID, exclude_reviewer_ids=["r-strong"], min_h_index=3),
        limit=10,
    )

    assert [m.candidate.id for m in outcome.matches] == ["r-weak"]


@pytest.mark.asyncio
async def test_ties_break_on_load_then_id(services):
    services.store.add_reviewer(make_reviewer("r-b", current_load=1))
    services.store.add_reviewer(make_reviewer("r-a", current_load=2))
    services.store.add_reviewer(make_reviewer("r-c", current_load=1))

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID), limit=10)

    assert [m.candidate.id for m in outcome.matches] == ["r-b", "r-c", "r-a"]
    assert len({m.overall_score for m in outcome.matches}) == 1


@pytest.mark.asyncio
async def test_diversity_preference_penalizes_repeated_institutions(services):
    services.store.add_reviewer(make_reviewer("r-1"))
    services.store.add_reviewer(make_reviewer("r-2"))

    plain = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID), limit=10)
    diverse = await services.matcher.find_reviewers(
        MatchingCriteria(
            manuscript_id=MANUSCRIPT_ID,
            diversity=DiversityPreferences(prefer_distinct_institutions=True),
        ),
        limit=10,
    )

    second = diverse.matches[1]
    assert second.candidate.id == "r-2"
    assert second.overall_score == pytest.approx(plain.matches[1].overall_score - services.config.diversity_penalty)
    assert "Diversity adjustment applied" in second.match_reasons


@pytest.mark.asyncio
async def test_missing_field_raises(services):
    services.store.add_manuscript(make_manuscript("ms-nofield", field=None))

    with pytest.raises(FieldUndeterminedError):
        await services.matcher.find_reviewers(MatchingCriteria(manuscript_id="ms-nofield"))


@pytest.mark.asyncio
async def test_criteria_field_overrides_missing_manuscript_field(services):
    services.store.add_manuscript(make_manuscript("ms-nofield", field=None))
    services.store.add_reviewer(make_reviewer("r-strong"))

    outcome = await services.matcher.find_reviewers(
        MatchingCriteria(manuscript_id="ms-nofield", field="Machine Learning")
    )

    assert outcome.metadata.field == "Machine Learning"
    assert [m.candidate.id for m in outcome.matches] == ["r-strong"]


@pytest.mark.asyncio
async def test_unknown_manuscript_raises_not_found(services):
    with pytest.raises(NotFoundError):
        await services.matcher.find_reviewers(MatchingCriteria(manuscript_id="nope"))


@pytest.mark.asyncio
async def test_conflict_check_errors_are_counted_not_raised(services, monkeypatch: pytest.MonkeyPatch):
    services.store.add_reviewer(make_reviewer("r-ok"))
    services.store.add_reviewer(make_reviewer("r-broken"))
    original = services.store.get_declared_conflicts

    def _flaky(reviewer_id, manuscript_id):
        if reviewer_id == "r-broken":
            raise RuntimeError("connection reset")
        return original(reviewer_id, manuscript_id)

    monkeypatch.setattr(services.store, "get_declared_conflicts", _flaky)

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID))

    assert [m.candidate.id for m in outcome.matches] == ["r-ok"]
    assert outcome.metadata.errored == 1
    assert _metadata_total(outcome) == outcome.total_candidates


def test_availability_score_formula():
    def rec(status):
        return AssignmentRecord(reviewer_id="r", status=status)

    assert availability_score([]) == 100.0
    # 拒绝率 2/4 -> -25；1 个待回复 -> -10
    assert availability_score([rec("declined"), rec("declined"), rec("pending"), rec("completed")]) == 65.0
    # 总数 > 5 额外 -20
    assert availability_score([rec("accepted")] * 6) == 80.0
    assert availability_score([rec("pending")] * 12) == 0.0


def _completed(days: int, count: int) -> list:
    now = datetime.now(timezone.utc)
    return [
        AssignmentRecord(reviewer_id="r-q", status="completed", responded_at=now - timedelta(days=days), completed_at=now)
        for _ in range(count)
    ]


def test_quality_score_rewards_track_record_and_penalizes_slow_reviews():
    candidate = make_reviewer("r-q", h_index=10, publication_count=25)

    # 50 + 20 (h-index) + 5 (发文量)
    assert quality_score(candidate, _TrackRecord([])) == 75.0
    # + 9 (3 次完成)，平均 20 天不扣分
    assert quality_score(candidate, _TrackRecord(_completed(20, 3))) == pytest.approx(84.0)
    # 平均 75 天 -> 扣 (75 - 45) / 3 = 10
    assert quality_score(candidate, _TrackRecord(_completed(75, 3))) == pytest.approx(74.0)
    # 平均 120 天 -> (120 - 45) / 3 = 25，封顶扣 20
    assert quality_score(candidate, _TrackRecord(_completed(120, 1))) == pytest.approx(58.0)


def test_quality_score_is_clamped_to_100():
    candidate = make_reviewer("r-top", h_index=40, publication_count=200)

    assert quality_score(candidate, _TrackRecord(_completed(10, 8))) == 100.0


@pytest.mark.asyncio
async def test_match_reasons_follow_documented_order(services):
    services.store.add_reviewer(make_reviewer("r-veteran", h_index=30, publication_count=90))
    for record in _completed(14, 3):
        services.store.add_history(record.model_copy(update={"reviewer_id": "r-veteran", "invited_at": record.responded_at}))

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID), limit=1)

    assert outcome.matches[0].match_reasons == [
        "Expertise matches field: Machine Learning",
        "Expertise matches subfield: Natural Language Processing",
        "Keyword matches: transformers",
        "High h-index (30)",
        "High availability",
        "Active reviewer",
        "Fast review turnaround",
    ]


@pytest.mark.asyncio
async def test_unavailable_reviewers_count_toward_pool_and_availability_filter(services):
    services.store.add_reviewer(make_reviewer("r-on-leave", is_available=False))
    services.store.add_reviewer(make_reviewer("r-ready"))

    outcome = await services.matcher.find_reviewers(MatchingCriteria(manuscript_id=MANUSCRIPT_ID))

    assert [m.candidate.id for m in outcome.matches] == ["r-ready"]
    # author-1 + r-on-leave + r-ready
    assert outcome.total_candidates == 3
    assert outcome.metadata.filtered_availability == 1
    assert _metadata_total(outcome) == outcome.total_candidates

from datetime import timedelta

import pytest

from factories import AUTHOR_ID, MANUSCRIPT_ID, blocking_declaration, make_manuscript, make_reviewer
from refereeflow.core.errors import NotFoundError, StoreTimeoutError, ValidationError
from refereeflow.models.conflict import ConflictSeverity, ConflictType, DeclaredConflict
from refereeflow.models.reviewer import AffiliationRecord, CollaborationRecord


@pytest.mark.asyncio
async def test_co_author_is_never_eligible(services):
    result = await services.detector.check_conflicts(AUTHOR_ID, MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert result.error is None
    assert [c.type for c in result.conflicts] == [ConflictType.CO_AUTHORSHIP]
    assert result.risk_score == 1.0


@pytest.mark.asyncio
async def test_clean_reviewer_is_eligible_with_zero_risk(services):
    services.store.add_reviewer(make_reviewer("r-clean"))

    result = await services.detector.check_conflicts("r-clean", MANUSCRIPT_ID)

    assert result.is_eligible is True
    assert result.conflicts == []
    assert result.risk_score == 0.0


@pytest.mark.asyncio
async def test_shared_institution_is_soft_and_normalized(services):
    services.store.add_reviewer(make_reviewer("r-mit", affiliation="massachusetts institute of technology."))

    result = await services.detector.check_conflicts("r-mit", MANUSCRIPT_ID)

    assert result.is_eligible is True
    assert result.conflict_types() == [ConflictType.SHARED_INSTITUTION]
    assert result.risk_score == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_citation_overlap_contribution_is_capped(services):
    refs = [
        "Vaswani et al. (2017) Attention is all you need",
        "doi:10.1000/abc1",
        "doi:10.1000/abc2",
        "doi:10.1000/abc3",
        "doi:10.1000/abc4",
    ]
    services.store.add_manuscript(
        make_manuscript(
            "ms-refs",
            references=["doi:10.1000/abc1", "doi:10.1000/abc2", "doi:10.1000/abc3", "doi:10.1000/abc4"],
        )
    )
    services.store.add_reviewer(make_reviewer("r-cites", recent_references=refs))

    result = await services.detector.check_conflicts("r-cites", "ms-refs")

    overlap = [c for c in result.conflicts if c.type == ConflictType.CITATION_OVERLAP]
    assert len(overlap) == 1
    assert overlap[0].contribution == pytest.approx(services.config.citation_overlap_cap)
    # 引用重叠永远不会单独导致硬拦截
    assert result.is_eligible is True
    assert result.has_hard_conflict is False


@pytest.mark.asyncio
async def test_blocking_declaration_is_hard_conflict(services):
    services.store.add_reviewer(make_reviewer("r-declared"))
    services.store.record_declared_conflict(blocking_declaration("r-declared"))

    result = await services.detector.check_conflicts("r-declared", MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert ConflictType.EXPLICIT_DECLARED in result.conflict_types()


@pytest.mark.asyncio
async def test_any_declaration_is_hard_unless_marked_disclosure(services):
    services.store.add_reviewer(make_reviewer("r-declared-low"))
    services.store.record_declared_conflict(
        DeclaredConflict(
            reviewer_id="r-declared-low",
            manuscript_id=MANUSCRIPT_ID,
            description="Shared lab space last year",
            severity=ConflictSeverity.LOW,
        )
    )

    result = await services.detector.check_conflicts("r-declared-low", MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert result.has_hard_conflict is True
    assert result.conflict_types() == [ConflictType.EXPLICIT_DECLARED]


@pytest.mark.asyncio
async def test_soft_signals_cross_threshold_make_reviewer_ineligible(services):
    services.store.add_reviewer(make_reviewer("r-risky", affiliation="Massachusetts Institute of Technology"))
    services.store.record_declared_conflict(
        DeclaredConflict(
            reviewer_id="r-risky",
            manuscript_id=MANUSCRIPT_ID,
            conflict_type="financial",
            description="Consulting for the funder",
            severity=ConflictSeverity.HIGH,
            is_blocking=False,
        )
    )

    result = await services.detector.check_conflicts("r-risky", MANUSCRIPT_ID)

    # 0.3 (同机构) + 0.4 (high 财务) = 0.7 >= 阈值
    assert result.risk_score == pytest.approx(0.7)
    assert result.has_hard_conflict is False
    assert result.is_eligible is False


def _years_ago(services, years: float):
    return services.clock.now.date() - timedelta(days=int(365 * years))


def _collaborated(services, reviewer_id, years: float, count: int = 1, collaborator_id=AUTHOR_ID):
    services.store.add_collaboration(
        CollaborationRecord(
            reviewer_id=reviewer_id,
            collaborator_id=collaborator_id,
            collaboration_count=count,
            last_collaboration_date=_years_ago(services, years),
        )
    )


@pytest.mark.asyncio
async def test_recent_collaboration_with_author_is_hard_conflict(services):
    services.store.add_reviewer(make_reviewer("r-recent"))
    _collaborated(services, "r-recent", 1, count=2)

    result = await services.detector.check_conflicts("r-recent", MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert result.has_hard_conflict is True
    assert result.conflict_types() == [ConflictType.RECENT_COLLABORATION]
    assert AUTHOR_ID in result.conflicts[0].description


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "years,count,expected",
    [
        (4, 1, 0.5),
        (8, 2, 0.25),
        (8, 6, 0.5),
    ],
)
async def test_older_collaboration_is_graded_soft_conflict(services, years, count, expected):
    services.store.add_reviewer(make_reviewer("r-past"))
    _collaborated(services, "r-past", years, count=count)

    result = await services.detector.check_conflicts("r-past", MANUSCRIPT_ID)

    assert result.conflict_types() == [ConflictType.COLLABORATION_HISTORY]
    assert result.risk_score == pytest.approx(expected)
    assert result.has_hard_conflict is False
    assert result.is_eligible is True


@pytest.mark.asyncio
async def test_collaboration_outside_lookback_is_ignored(services):
    services.store.add_reviewer(make_reviewer("r-ancient"))
    _collaborated(services, "r-ancient", 12, count=20)

    result = await services.detector.check_conflicts("r-ancient", MANUSCRIPT_ID)

    assert result.conflicts == []
    assert result.is_eligible is True


@pytest.mark.asyncio
async def test_collaboration_is_found_from_either_side(services):
    services.store.add_reviewer(make_reviewer("r-other-side"))
    # 记录方向是 作者 -> 审稿人
    _collaborated(services, AUTHOR_ID, 1, collaborator_id="r-other-side")

    result = await services.detector.check_conflicts("r-other-side", MANUSCRIPT_ID)

    assert result.conflict_types() == [ConflictType.RECENT_COLLABORATION]


@pytest.mark.asyncio
async def test_collaboration_with_non_author_is_ignored(services):
    services.store.add_reviewer(make_reviewer("r-elsewhere"))
    _collaborated(services, "r-elsewhere", 1, collaborator_id="someone-else")

    result = await services.detector.check_conflicts("r-elsewhere", MANUSCRIPT_ID)

    assert result.conflicts == []


@pytest.mark.asyncio
async def test_recent_past_affiliation_overlap_is_soft(services):
    services.store.add_reviewer(make_reviewer("r-moved"))
    services.store.add_affiliation(
        AffiliationRecord(profile_id="r-moved", institution_name="University of Toronto", end_date=_years_ago(services, 1))
    )
    services.store.add_affiliation(AffiliationRecord(profile_id=AUTHOR_ID, institution_name="university of toronto"))

    result = await services.detector.check_conflicts("r-moved", MANUSCRIPT_ID)

    assert result.conflict_types() == [ConflictType.AFFILIATION_HISTORY]
    assert result.risk_score == pytest.approx(services.config.affiliation_history_weight)
    assert "University of Toronto" in result.conflicts[0].description
    assert result.is_eligible is True


@pytest.mark.asyncio
async def test_affiliation_that_ended_long_ago_is_ignored(services):
    services.store.add_reviewer(make_reviewer("r-long-gone"))
    services.store.add_affiliation(
        AffiliationRecord(profile_id="r-long-gone", institution_name="University of Toronto", end_date=_years_ago(services, 4))
    )
    services.store.add_affiliation(AffiliationRecord(profile_id=AUTHOR_ID, institution_name="University of Toronto"))

    result = await services.detector.check_conflicts("r-long-gone", MANUSCRIPT_ID)

    assert result.conflicts == []


@pytest.mark.asyncio
async def test_current_affiliation_history_counts_as_shared_institution(services):
    services.store.add_reviewer(make_reviewer("r-dual"))
    services.store.add_affiliation(AffiliationRecord(profile_id="r-dual", institution_name="University of Toronto"))
    services.store.add_affiliation(AffiliationRecord(profile_id=AUTHOR_ID, institution_name="University of Toronto"))

    result = await services.detector.check_conflicts("r-dual", MANUSCRIPT_ID)

    assert result.conflict_types() == [ConflictType.SHARED_INSTITUTION]
    assert result.conflicts[0].description.endswith("University of Toronto")
    assert result.risk_score == pytest.approx(services.config.shared_institution_weight)


@pytest.mark.asyncio
async def test_shared_institution_is_reported_once_across_profile_and_history(services):
    mit = "Massachusetts Institute of Technology"
    services.store.add_reviewer(make_reviewer("r-mit-both", affiliation=mit))
    services.store.add_affiliation(AffiliationRecord(profile_id="r-mit-both", institution_name=mit))
    services.store.add_affiliation(AffiliationRecord(profile_id=AUTHOR_ID, institution_name=mit))

    result = await services.detector.check_conflicts("r-mit-both", MANUSCRIPT_ID)

    assert result.conflict_types() == [ConflictType.SHARED_INSTITUTION]
    assert result.risk_score == pytest.approx(services.config.shared_institution_weight)


@pytest.mark.asyncio
async def test_collaboration_lookup_failure_fails_closed(services, monkeypatch: pytest.MonkeyPatch):
    services.store.add_reviewer(make_reviewer("r-unknown-history"))

    def _broken(reviewer_id, person_ids, since):
        raise RuntimeError("collaboration_networks unavailable")

    monkeypatch.setattr(services.store, "get_collaborations", _broken)

    result = await services.detector.check_conflicts("r-unknown-history", MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert result.error == "conflict_check_failed"
    assert result.risk_score == 1.0


@pytest.mark.asyncio
async def test_check_multiple_matches_single_checks(services):
    services.store.add_reviewer(make_reviewer("r-a"))
    services.store.add_reviewer(make_reviewer("r-b", affiliation="Massachusetts Institute of Technology"))
    ids = ["r-a", AUTHOR_ID, "r-b", "r-missing"]

    batch = await services.detector.check_multiple(ids, MANUSCRIPT_ID)
    singles = [await services.detector.check_conflicts(rid, MANUSCRIPT_ID) for rid in ids]

    assert [r.model_dump() for r in batch] == [r.model_dump() for r in singles]


@pytest.mark.asyncio
async def test_missing_reviewer_fails_closed(services):
    result = await services.detector.check_conflicts("nobody", MANUSCRIPT_ID)

    assert result.is_eligible is False
    assert result.error == "reviewer_not_found"
    assert result.risk_score == 1.0


@pytest.mark.asyncio
async def test_lookup_failure_is_reported_per_candidate(services, monkeypatch: pytest.MonkeyPatch):
    services.store.add_reviewer(make_reviewer("r-ok"))
    services.store.add_reviewer(make_reviewer("r-broken"))
    original = services.store.get_declared_conflicts

    def _flaky(reviewer_id, manuscript_id):
        if reviewer_id == "r-broken":
            raise StoreTimeoutError("get_declared_conflicts timed out after 5.0s")
        return original(reviewer_id, manuscript_id)

    monkeypatch.setattr(services.store, "get_declared_conflicts", _flaky)

    ok, broken = await services.detector.check_multiple(["r-ok", "r-broken"], MANUSCRIPT_ID)

    assert ok.is_eligible is True and ok.error is None
    assert broken.is_eligible is False
    assert broken.error == "store_timeout"


@pytest.mark.asyncio
async def test_unknown_manuscript_raises_not_found(services):
    with pytest.raises(NotFoundError):
        await services.detector.check_conflicts(AUTHOR_ID, "ms-unknown")


@pytest.mark.asyncio
async def test_declare_conflict_records_and_affects_next_check(services):
    services.store.add_reviewer(make_reviewer("r-later"))

    saved = await services.detector.declare_conflict(
        reviewer_id="r-later",
        manuscript_id=MANUSCRIPT_ID,
        description="Collaborating on an active grant",
        severity=ConflictSeverity.BLOCKING,
        declared_by="editor-1",
    )
    result = await services.detector.check_conflicts("r-later", MANUSCRIPT_ID)

    assert saved.is_blocking is True
    assert result.is_eligible is False


@pytest.mark.asyncio
async def test_declare_conflict_requires_description(services):
    with pytest.raises(ValidationError):
        await services.detector.declare_conflict(reviewer_id="r-x", manuscript_id=MANUSCRIPT_ID, description="  ")

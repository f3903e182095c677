from fastapi import APIRouter, Depends

from refereeflow.core.errors import ReviewerAssignmentError, to_http_exception
from refereeflow.core.roles import EDITOR_ROLES, require_any_role
from refereeflow.schemas.reviewer import ConflictCheckRequest, DeclareConflictRequest, MatchRequest
from refereeflow.services.conflict_service import ConflictDetector, get_conflict_detector
from refereeflow.services.matching_service import ReviewerMatcher, get_reviewer_matcher

router = APIRouter(prefix="/reviewers", tags=["Reviewers"])


@router.post("/match")
async def match_reviewers(
    req: MatchRequest,
    _profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    matcher: ReviewerMatcher = Depends(get_reviewer_matcher),
):
    """
    为稿件推荐审稿人

    中文注释:
    - 权限：仅 editor/admin 可用。
    - 输出：候选摘要（不含 email）+ 各项评分 + 匹配理由 + COI 结果。
    """
    try:
        outcome = await matcher.find_reviewers(req, limit=req.limit)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": outcome.model_dump(mode="json")}


@router.post("/conflicts/check")
async def check_conflicts(
    req: ConflictCheckRequest,
    _profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    detector: ConflictDetector = Depends(get_conflict_detector),
):
    try:
        if req.reviewer_id:
            result = await detector.check_conflicts(req.reviewer_id, req.manuscript_id)
            return {"success": True, "data": result.model_dump(mode="json")}
        results = await detector.check_multiple(req.reviewer_ids or [], req.manuscript_id)
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": [r.model_dump(mode="json") for r in results]}


@router.post("/conflicts")
async def declare_conflict(
    req: DeclareConflictRequest,
    profile: dict = Depends(require_any_role(EDITOR_ROLES)),
    detector: ConflictDetector = Depends(get_conflict_detector),
):
    """编辑录入显式冲突声明；默认即硬冲突，is_blocking=false 时仅作为披露计入风险分。"""
    try:
        conflict = await detector.declare_conflict(
            reviewer_id=req.reviewer_id,
            manuscript_id=req.manuscript_id,
            description=req.description,
            conflict_type=req.conflict_type,
            severity=req.severity,
            blocking=req.is_blocking,
            declared_by=profile.get("id"),
        )
    except ReviewerAssignmentError as e:
        raise to_http_exception(e)
    return {"success": True, "data": conflict.model_dump(mode="json")}

from __future__ import annotations

from typing import Optional

from refereeflow.core.config import ReviewerAssignmentConfig
from refereeflow.services.candidate_store import CandidateStore, SupabaseCandidateStore
from refereeflow.services.invitation_store import InvitationStore, SupabaseInvitationStore
from refereeflow.services.memory_store import InMemoryReviewStore

_memory_store: Optional[InMemoryReviewStore] = None
_candidate_store: Optional[CandidateStore] = None
_invitation_store: Optional[InvitationStore] = None


def get_memory_store() -> InMemoryReviewStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = InMemoryReviewStore()
    return _memory_store


def get_candidate_store() -> CandidateStore:
    """
    获取 CandidateStore 单例

    中文注释: REVIEW_STORE_BACKEND=memory 时与 InvitationStore 共用同一个进程内存储。
    """
    global _candidate_store
    if _candidate_store is None:
        if ReviewerAssignmentConfig.from_env().store_backend == "memory":
            _candidate_store = get_memory_store()
        else:
            _candidate_store = SupabaseCandidateStore()
    return _candidate_store


def get_invitation_store() -> InvitationStore:
    global _invitation_store
    if _invitation_store is None:
        if ReviewerAssignmentConfig.from_env().store_backend == "memory":
            _invitation_store = get_memory_store()
        else:
            _invitation_store = SupabaseInvitationStore()
    return _invitation_store

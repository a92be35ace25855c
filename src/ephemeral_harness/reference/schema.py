"""Store layout of the reference onboarding system.

Every row's namespace column holds the owning subject id, so purging a
namespace removes whole subjects with their sessions and messages.
"""

from __future__ import annotations

from ..store.schema import StoreSchema, TableSpec

SUBJECTS = TableSpec(
    name="subjects",
    columns=("id", "name", "onboarded", "created_at"),
)

SESSIONS = TableSpec(
    name="sessions",
    columns=("id", "subject_id", "state", "updated_at"),
    namespace_column="subject_id",
    references=(("subject_id", "subjects"),),
)

MESSAGES = TableSpec(
    name="messages",
    columns=("id", "subject_id", "direction", "kind", "text", "seq"),
    namespace_column="subject_id",
    references=(("subject_id", "subjects"),),
)

ONBOARDING_SCHEMA = StoreSchema([SUBJECTS, SESSIONS, MESSAGES])

"""Book moderation pipeline: Draft -> Moderation -> Approved -> Active."""

from .models import BookStatus, UserRole


class WorkflowError(Exception):
    pass


class WorkflowPermissionError(WorkflowError):
    pass


STATUS_ORDER = (BookStatus.DRAFT, BookStatus.MODERATION, BookStatus.APPROVED, BookStatus.ACTIVE)

# Role that may move a book into each status; super admins may do any step.
TRANSITION_ROLES = {
    BookStatus.MODERATION: UserRole.AUTHOR,
    BookStatus.APPROVED: UserRole.MODERATOR,
    BookStatus.ACTIVE: UserRole.SUPER_ADMIN,
}


def next_status(current: BookStatus) -> BookStatus | None:
    index = STATUS_ORDER.index(current)
    if index + 1 >= len(STATUS_ORDER):
        return None
    return STATUS_ORDER[index + 1]


def check_transition(current: BookStatus, target: BookStatus, actor_role: UserRole) -> None:
    if target not in TRANSITION_ROLES:
        raise WorkflowError(f"Books cannot be moved to {target.value}")
    if next_status(current) != target:
        raise WorkflowError(f"Cannot move a book from {current.value} to {target.value}")
    if actor_role not in (TRANSITION_ROLES[target], UserRole.SUPER_ADMIN):
        raise WorkflowPermissionError(f"Role {actor_role.value} cannot move a book to {target.value}")

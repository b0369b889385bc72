"""
Tenant context resolution.

Every core operation receives a TenantContext as its first argument instead of
reading an ambient "current organization". Lookups go through scoped_get so
that an id from another organization behaves exactly like an unknown id.
"""
from dataclasses import dataclass, field
from typing import Optional, TypeVar

from fastapi import Depends, Header
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import get_current_user, verify_device_token
from errors import Conflict, Forbidden, LimitExceeded, NotFound, Unauthorized
from models import Device, Organization, OrganizationMember, User, get_db
from observability import structured_logger, metrics

ROLE_PERMISSIONS: dict[str, frozenset] = {
    "owner": frozenset({
        "devices:read", "devices:write", "devices:admin",
        "commands:read", "commands:write", "members:admin",
    }),
    "admin": frozenset({
        "devices:read", "devices:write", "devices:admin",
        "commands:read", "commands:write", "members:admin",
    }),
    "operator": frozenset({
        "devices:read", "devices:write", "commands:read", "commands:write",
    }),
    "viewer": frozenset({"devices:read", "commands:read"}),
}

DEVICE_PERMISSIONS = frozenset({"device:report"})


@dataclass(frozen=True)
class TenantContext:
    organization_id: int
    organization_status: str
    max_devices: int
    max_users: int
    principal_kind: str  # "user" or "device"
    principal_id: str
    role: Optional[str] = None
    permissions: frozenset = field(default_factory=frozenset)

    @property
    def user_id(self) -> Optional[int]:
        return int(self.principal_id) if self.principal_kind == "user" else None

    @property
    def device_id(self) -> Optional[str]:
        return self.principal_id if self.principal_kind == "device" else None

    def has(self, permission: str) -> bool:
        return permission in self.permissions


def _context_for(org: Organization, kind: str, principal_id: str, role: Optional[str], permissions: frozenset) -> TenantContext:
    return TenantContext(
        organization_id=org.id,
        organization_status=org.status,
        max_devices=org.max_devices,
        max_users=org.max_users,
        principal_kind=kind,
        principal_id=principal_id,
        role=role,
        permissions=permissions,
    )


def resolve_user_context(db: Session, user: Optional[User], organization_id: Optional[int] = None) -> TenantContext:
    """
    Resolve the organization and permission set for an authenticated operator.

    With several memberships and no explicit organization_id, the oldest active
    membership wins.
    """
    if user is None or not user.is_active:
        raise Unauthorized("No valid session")

    query = (
        db.query(OrganizationMember, Organization)
        .join(Organization, Organization.id == OrganizationMember.organization_id)
        .filter(OrganizationMember.user_id == user.id, OrganizationMember.status == "active")
    )
    if organization_id is not None:
        query = query.filter(OrganizationMember.organization_id == organization_id)

    row = query.order_by(OrganizationMember.created_at, OrganizationMember.id).first()
    if row is None:
        metrics.inc_counter("tenant_resolution_failures_total", {"reason": "no_membership"})
        raise Forbidden("No membership in the requested organization")

    member, org = row
    if org.status != "active":
        metrics.inc_counter("tenant_resolution_failures_total", {"reason": "organization_" + org.status})
        raise Forbidden(f"Organization is {org.status}")

    return _context_for(org, "user", str(user.id), member.role, ROLE_PERMISSIONS.get(member.role, frozenset()))


def resolve_device_context(db: Session, device: Optional[Device]) -> TenantContext:
    if device is None:
        raise Unauthorized("No valid device credential")

    org = db.get(Organization, device.organization_id)
    if org is None:
        raise Forbidden("Device organization no longer exists")
    if org.status != "active":
        raise Forbidden(f"Organization is {org.status}")

    return _context_for(org, "device", device.id, None, DEVICE_PERMISSIONS)


def require_permission(context: TenantContext, permission: str) -> None:
    if not context.has(permission):
        structured_logger.log_event(
            "tenant.permission.denied",
            level="WARN",
            organization_id=context.organization_id,
            principal_kind=context.principal_kind,
            principal_id=context.principal_id,
            permission=permission
        )
        raise Forbidden(f"Missing permission {permission}")


def ensure_same_organization(context: TenantContext, organization_id: Optional[int]) -> None:
    """For payloads that name an organization explicitly, a mismatch is Forbidden."""
    if organization_id is None or int(organization_id) != context.organization_id:
        structured_logger.log_event(
            "tenant.organization.mismatch",
            level="WARN",
            organization_id=context.organization_id,
            claimed_organization_id=organization_id,
            principal_id=context.principal_id
        )
        raise Forbidden("Organization mismatch")


ModelT = TypeVar("ModelT")

def scoped_get(db: Session, context: TenantContext, model: type[ModelT], entity_id, *, for_update: bool = False) -> ModelT:
    """Fetch by id within the caller's organization; cross-tenant ids raise NotFound."""
    query = db.query(model).filter(model.id == entity_id, model.organization_id == context.organization_id)
    if for_update:
        query = query.with_for_update()
    entity = query.first()
    if entity is None:
        raise NotFound(f"{model.__name__} not found")
    return entity


def create_organization(db: Session, user: User, name: str, slug: str, max_devices: int = 100, max_users: int = 10) -> Organization:
    """Onboarding: a new active organization with the caller as owner"""
    if db.query(Organization).filter(Organization.slug == slug).first():
        raise Conflict(f"Organization slug '{slug}' is taken")

    org = Organization(name=name, slug=slug, status="active", max_devices=max_devices, max_users=max_users)
    db.add(org)
    db.flush()
    db.add(OrganizationMember(organization_id=org.id, user_id=user.id, role="owner", status="active"))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"Organization slug '{slug}' is taken")
    db.refresh(org)

    structured_logger.log_event(
        "organization.created",
        organization_id=org.id,
        slug=slug,
        owner_user_id=user.id
    )
    return org


def add_member(db: Session, context: TenantContext, username: str, role: str) -> OrganizationMember:
    require_permission(context, "members:admin")

    user = db.query(User).filter(User.username == username).first()
    if user is None:
        raise NotFound("User not found")

    existing = db.query(OrganizationMember).filter(
        OrganizationMember.organization_id == context.organization_id,
        OrganizationMember.user_id == user.id
    ).first()
    if existing:
        raise Conflict("User is already a member")

    active_members = db.query(func.count(OrganizationMember.id)).filter(
        OrganizationMember.organization_id == context.organization_id,
        OrganizationMember.status == "active"
    ).scalar()
    if active_members >= context.max_users:
        raise LimitExceeded("Organization user limit reached", max_users=context.max_users)

    member = OrganizationMember(
        organization_id=context.organization_id,
        user_id=user.id,
        role=role,
        status="active"
    )
    db.add(member)
    db.commit()
    db.refresh(member)

    structured_logger.log_event(
        "organization.member.added",
        organization_id=context.organization_id,
        user_id=user.id,
        role=role,
        added_by=context.principal_id
    )
    return member


# --- FastAPI dependencies ------------------------------------------------------

async def get_tenant_context(
    x_organization_id: Optional[int] = Header(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> TenantContext:
    return resolve_user_context(db, user, x_organization_id)


async def get_device_context(
    device: Device = Depends(verify_device_token),
    db: Session = Depends(get_db)
) -> TenantContext:
    return resolve_device_context(db, device)

# backend/dealdesk/api/notifications.py
import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import SessionLocal
from ..models import Notification, TeamMember, TeamPipeline, User

logger = logging.getLogger(__name__)

SOURCE_LABELS: Dict[str, str] = {
    "manual": "Manual",
    "website": "Site",
    "whatsapp": "WhatsApp",
    "meta": "Meta Ads",
    "facebook": "Facebook",
    "instagram": "Instagram",
    "wordpress": "WordPress",
    "api": "API",
    "import": "Importação",
    "deal_closure": "Fechamento de negócio",
}


def source_label(source: str) -> str:
    return SOURCE_LABELS.get(source, source)


def _team_leader_ids(db: Session, pipeline_id: int) -> List[int]:
    team_ids = select(TeamPipeline.team_id).where(TeamPipeline.pipeline_id == pipeline_id)
    rows = db.execute(
        select(TeamMember.user_id)
        .where(TeamMember.team_id.in_(team_ids), TeamMember.is_leader.is_(True))
        .order_by(TeamMember.id)
    ).scalars().all()
    return list(rows)


def _admin_ids(db: Session, organization_id: int) -> List[int]:
    rows = db.execute(
        select(User.id)
        .where(
            User.organization_id == organization_id,
            User.role_name == "admin",
            User.is_active.is_(True),
        )
        .order_by(User.id)
    ).scalars().all()
    return list(rows)


def notify_lead_stakeholders(
    db: Session,
    lead_id: int,
    lead_name: str,
    organization_id: int,
    pipeline_id: Optional[int] = None,
    assigned_user_id: Optional[int] = None,
    source: str = "deal_closure",
) -> int:
    """
    Notifies, in priority order, the assigned representative, the leaders of
    the teams linked to the lead's pipeline and the organization's active
    admins. A recipient reachable through several tiers gets one notification,
    with the message of the first tier that reached them.

    Tier lookups and the batch insert fail independently; every failure is
    logged and swallowed. Returns the number of notifications written.
    """
    notified: Set[int] = set()
    notifications: List[Notification] = []
    label = source_label(source)

    def _push(user_id: int, title: str, content: str) -> None:
        if user_id in notified:
            return
        notified.add(user_id)
        notifications.append(
            Notification(
                user_id=user_id,
                organization_id=organization_id,
                lead_id=lead_id,
                title=title,
                content=content,
                type="lead",
            )
        )

    # 1) assigned representative
    if assigned_user_id:
        _push(
            assigned_user_id,
            "🎉 Negócio fechado!",
            f"{lead_name} foi marcado como ganho (origem: {label})",
        )

    # 2) leaders of the teams linked to the pipeline
    if pipeline_id:
        try:
            for leader_id in _team_leader_ids(db, pipeline_id):
                _push(
                    leader_id,
                    "🎉 Negócio fechado na sua equipe!",
                    f"{lead_name} foi ganho na pipeline da sua equipe (origem: {label})",
                )
        except SQLAlchemyError:
            db.rollback()
            logger.error("Team leader lookup failed for pipeline %s", pipeline_id, exc_info=True)

    # 3) organization admins
    try:
        for admin_id in _admin_ids(db, organization_id):
            _push(
                admin_id,
                "🎉 Negócio fechado",
                f"{lead_name} foi ganho na organização (origem: {label})",
            )
    except SQLAlchemyError:
        db.rollback()
        logger.error("Admin lookup failed for organization %s", organization_id, exc_info=True)

    if not notifications:
        return 0

    try:
        db.add_all(notifications)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Could not create notifications for lead %s", lead_id, exc_info=True)
        return 0

    logger.info("%d notifications created for lead %s", len(notifications), lead_id)
    return len(notifications)


def notify_lead_stakeholders_task(**kwargs) -> int:
    """Background-task entry point: runs the fan-out on a session of its own."""
    db = SessionLocal()
    try:
        return notify_lead_stakeholders(db, **kwargs)
    finally:
        db.close()

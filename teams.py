# teams.py — Team formation and the invite → accept/decline workflow
import logging
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from models import InvitationStatus, Team, TeamInvitation, TeamMember, User, utcnow

logger = logging.getLogger(__name__)


async def create_team(db: AsyncSession, owner: User, name: str) -> Team:
    team = Team(name=name, owner_id=owner.id)
    team.members.append(TeamMember(user_id=owner.id, username=owner.username))
    db.add(team)
    await db.commit()
    logger.info(f"{owner.username} created team {name}")
    return await get_team(db, team.id)


async def get_team(db: AsyncSession, team_id: str) -> Team:
    result = await db.execute(
        select(Team).filter(Team.id == team_id).execution_options(populate_existing=True)
    )
    team = result.scalars().first()
    if not team:
        raise LookupError("Team not found")
    return team


async def list_user_teams(db: AsyncSession, user_id: str) -> list[Team]:
    result = await db.execute(
        select(Team)
        .join(TeamMember, TeamMember.team_id == Team.id)
        .filter(TeamMember.user_id == user_id)
        .order_by(Team.created_at.asc())
    )
    return list(result.scalars().all())


async def invite_member(db: AsyncSession, team_id: str, inviter: User, username: str) -> TeamInvitation:
    team = await get_team(db, team_id)
    if team.owner_id != inviter.id:
        raise PermissionError("Only the team owner can send invitations.")
    if username == inviter.username:
        raise ValueError("You cannot invite yourself.")

    result = await db.execute(select(User).filter(User.username == username))
    invitee = result.scalars().first()
    if not invitee:
        raise LookupError(f'No user found with username "{username}".')
    if any(m.user_id == invitee.id for m in team.members):
        raise ValueError(f"{username} is already in the team.")

    result = await db.execute(
        select(TeamInvitation).filter(
            TeamInvitation.team_id == team.id,
            TeamInvitation.to_user_id == invitee.id,
            TeamInvitation.status == InvitationStatus.pending.value,
        )
    )
    if result.scalars().first():
        raise ValueError(f"An invitation to join this team has already been sent to {username}.")

    invitation = TeamInvitation(
        team_id=team.id,
        team_name=team.name,
        from_user_id=inviter.id,
        from_username=inviter.username,
        to_user_id=invitee.id,
        to_username=invitee.username,
        status=InvitationStatus.pending.value,
        request_date=utcnow(),
    )
    db.add(invitation)
    await db.commit()
    await db.refresh(invitation)
    logger.info(f"{inviter.username} invited {username} to {team.name}")
    return invitation


async def list_pending_invitations(db: AsyncSession, user_id: str) -> list[TeamInvitation]:
    result = await db.execute(
        select(TeamInvitation)
        .filter(
            TeamInvitation.to_user_id == user_id,
            TeamInvitation.status == InvitationStatus.pending.value,
        )
        .order_by(TeamInvitation.request_date.desc())
    )
    return list(result.scalars().all())


async def respond_to_invitation(db: AsyncSession, invitation_id: str, user: User, decision: str) -> TeamInvitation:
    """
    Accept or decline an invitation addressed to ``user``. Accepting adds the
    membership and closes the invitation in the same commit.
    """
    decision = InvitationStatus(decision)
    if decision == InvitationStatus.pending:
        raise ValueError("Decision must be 'accepted' or 'declined'")

    invitation = await db.get(TeamInvitation, invitation_id)
    if not invitation:
        raise LookupError("Invitation not found")
    if invitation.to_user_id != user.id:
        raise PermissionError("This invitation is not addressed to you.")

    closed = await db.execute(
        update(TeamInvitation)
        .where(
            TeamInvitation.id == invitation_id,
            TeamInvitation.status == InvitationStatus.pending.value,
        )
        .values(status=decision.value, decision_date=utcnow())
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        await db.rollback()
        raise ValueError("This invitation has already been answered.")

    if decision == InvitationStatus.accepted:
        team = await db.get(Team, invitation.team_id)
        if team is None:
            await db.rollback()
            raise ValueError("Team does not exist anymore.")
        if await db.get(TeamMember, (team.id, user.id)) is None:
            db.add(TeamMember(team_id=team.id, user_id=user.id, username=user.username))

    await db.commit()
    await db.refresh(invitation)
    logger.info(f"{user.username} {decision.value} the invitation to {invitation.team_name}")
    return invitation


def serialize_team(team: Team) -> dict:
    return {
        "id": team.id,
        "name": team.name,
        "owner_id": team.owner_id,
        "members": [m.user_id for m in team.members],
        "member_usernames": {m.user_id: m.username for m in team.members},
    }


def serialize_invitation(inv: TeamInvitation) -> dict:
    return {
        "id": inv.id,
        "team_id": inv.team_id,
        "team_name": inv.team_name,
        "from_user_id": inv.from_user_id,
        "from_username": inv.from_username,
        "to_user_id": inv.to_user_id,
        "to_username": inv.to_username,
        "status": inv.status,
        "request_date": inv.request_date.isoformat() if inv.request_date else None,
        "decision_date": inv.decision_date.isoformat() if inv.decision_date else None,
    }

import pytest
from sqlalchemy.future import select

from models.audit_log import AuditLogEntry
from models.risk_flag import RiskFlag
from models.user import User
from services import admin, audit_trail, ledger, plans, risk_guard
from services.errors import (
    AccountNotFound,
    DuplicatePlan,
    PermissionDenied,
    PlanUnavailable,
    RiskFlagAlreadyResolved,
)
from services.orchestrator import AccountContext
from services.tools import get_tool_config


ADMIN = AccountContext(account_id="admin-1", role="admin")
SUPER_ADMIN = AccountContext(account_id="root-1", role="super_admin")


async def _seed(session_maker):
    async with session_maker() as session:
        session.add_all(
            [
                User(id="admin-1", email="admin@example.com", role="admin", credits=0),
                User(id="root-1", email="root@example.com", role="super_admin", credits=0),
                User(id="creator-1", email="creator@example.com", credits=5),
            ]
        )
        await session.commit()


async def _audit_entries(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(AuditLogEntry).order_by(AuditLogEntry.created_at.asc()))
        return list(result.scalars().all())


def test_diff_fields_keeps_only_changed_keys():
    diff = audit_trail.diff_fields(
        {"credit_cost": 1, "hourly_limit": 30, "model": "gpt-4o-mini"},
        {"credit_cost": 4, "hourly_limit": 30, "model": "gpt-4o"},
    )
    assert diff == {
        "before": {"credit_cost": 1, "model": "gpt-4o-mini"},
        "after": {"credit_cost": 4, "model": "gpt-4o"},
    }


@pytest.mark.asyncio
async def test_record_rejects_unknown_actions(session_maker):
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await audit_trail.record(
                session,
                actor_id="admin-1",
                action="impersonate",
                entity_type="account",
                entity_id="creator-1",
            )


@pytest.mark.asyncio
async def test_ban_and_unban_are_audited_with_before_after(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        banned = await admin.set_ban(session, ADMIN, "creator-1", True, "Chargeback abuse")
        assert banned.is_banned is True
        await admin.set_ban(session, ADMIN, "creator-1", False, "Appeal accepted")

    entries = await _audit_entries(session_maker)
    assert [entry.action for entry in entries] == ["ban", "unban"]
    assert entries[0].before_json == {"is_banned": False, "ban_reason": None}
    assert entries[0].after_json == {"is_banned": True, "ban_reason": "Chargeback abuse"}
    assert entries[1].after_json == {"is_banned": False, "ban_reason": None}
    assert all(entry.actor_id == "admin-1" for entry in entries)


@pytest.mark.asyncio
async def test_admin_cannot_ban_self(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        with pytest.raises(PermissionDenied):
            await admin.set_ban(session, ADMIN, "admin-1", True, "oops")

    assert await _audit_entries(session_maker) == []


@pytest.mark.asyncio
async def test_role_changes_respect_hierarchy(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        await admin.change_role(session, ADMIN, "creator-1", "support", "Joined support team")
        with pytest.raises(PermissionDenied):
            await admin.change_role(session, ADMIN, "creator-1", "admin")
        promoted = await admin.change_role(session, SUPER_ADMIN, "creator-1", "admin", "Promotion")
        assert promoted.role == "admin"

    entries = await _audit_entries(session_maker)
    assert [(entry.before_json, entry.after_json) for entry in entries] == [
        ({"role": "user"}, {"role": "support"}),
        ({"role": "support"}, {"role": "admin"}),
    ]


@pytest.mark.asyncio
async def test_tool_config_change_is_audited_and_hot_reloaded(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        before = await get_tool_config(session, "hooks")
        updated = await admin.update_tool_config(
            session, ADMIN, "hooks", {"credit_cost": 4, "hourly_limit": 10}, "Pricing update"
        )
        assert updated.credit_cost == 4

    async with session_maker() as session:
        live = await get_tool_config(session, "hooks")
    assert live.credit_cost == 4
    assert live.hourly_limit == 10
    assert live.model == before.model

    entries = await _audit_entries(session_maker)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "config_change"
    assert entry.entity_type == "tool"
    assert entry.entity_id == "hooks"
    assert entry.before_json == {"credit_cost": before.credit_cost, "hourly_limit": before.hourly_limit}
    assert entry.after_json == {"credit_cost": 4, "hourly_limit": 10}


@pytest.mark.asyncio
async def test_tool_config_rejects_unknown_fields(session_maker):
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await admin.update_tool_config(session, ADMIN, "hooks", {"temperature": 2})


@pytest.mark.asyncio
async def test_refund_records_prefixed_description_and_audit(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        outcome = await admin.refund_credits(session, ADMIN, "creator-1", 3, "Broken output")
        assert outcome["balance_after"] == 8
        entries = await ledger.list_transactions(session, "creator-1")

    assert entries[0].tx_type == "refund"
    assert entries[0].description == "Refund: Broken output"
    audits = await _audit_entries(session_maker)
    assert len(audits) == 1
    assert audits[0].action == "credit_transaction"
    assert audits[0].after_json == {"credits": 8}


@pytest.mark.asyncio
async def test_soft_deleted_account_is_audited_and_hidden(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        await admin.soft_delete_account(session, ADMIN, "creator-1", "GDPR request")
        with pytest.raises(AccountNotFound):
            await ledger.get_balance(session, "creator-1")

    async with session_maker() as session:
        trail = await audit_trail.get_entity_audit_trail(session, "account", "creator-1")
    assert [entry.action for entry in trail] == ["delete"]
    assert trail[0].reason == "GDPR request"


@pytest.mark.asyncio
async def test_audit_log_filters_and_order(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        await admin.grant_credits(session, ADMIN, "creator-1", 5, reason="Promo")
        await admin.set_ban(session, ADMIN, "creator-1", True, "Spam")
        await admin.change_role(session, SUPER_ADMIN, "admin-1", "support")

        newest_first = await audit_trail.list_audit_logs(session)
        by_admin = await audit_trail.list_audit_logs(session, actor_id="admin-1")
        bans = await audit_trail.list_audit_logs(session, action="ban")
        trail = await audit_trail.get_entity_audit_trail(session, "account", "creator-1")

    assert [entry.action for entry in newest_first] == ["role_change", "ban", "credit_transaction"]
    assert {entry.action for entry in by_admin} == {"ban", "credit_transaction"}
    assert [entry.entity_id for entry in bans] == ["creator-1"]
    assert [entry.action for entry in trail] == ["credit_transaction", "ban"]


@pytest.mark.asyncio
async def test_plan_change_is_audited_once_after_commit(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        starter = await admin.create_plan(session, ADMIN, {"name": "Starter", "credits": 50, "price_cents": 900})
        pro = await admin.create_plan(session, ADMIN, {"name": "Pro", "credits": 200, "price_cents": 2900})

        await admin.change_plan(session, ADMIN, "creator-1", starter.id, "Onboarding")
        user = await admin.change_plan(session, ADMIN, "creator-1", pro.id, "Upgrade")
        assert user.plan_id == pro.id
        assert admin.serialize_account(user)["plan_id"] == pro.id

    async with session_maker() as session:
        stored = await session.get(User, "creator-1")
        assert stored.plan_id == pro.id
        trail = await audit_trail.get_entity_audit_trail(session, "account", "creator-1")

    assert [entry.action for entry in trail] == ["plan_change", "plan_change"]
    assert trail[0].before_json == {"plan_id": None}
    assert trail[0].after_json == {"plan_id": starter.id}
    assert trail[1].before_json == {"plan_id": starter.id}
    assert trail[1].after_json == {"plan_id": pro.id}
    assert trail[1].actor_id == "admin-1"
    assert trail[1].reason == "Upgrade"


@pytest.mark.asyncio
async def test_plan_change_to_inactive_plan_writes_nothing(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        legacy = await admin.create_plan(session, ADMIN, {"name": "Legacy", "credits": 20, "price_cents": 500})
        await admin.update_plan(session, ADMIN, legacy.id, {"is_active": False}, "Retired")
        before = len(await _audit_entries(session_maker))

        with pytest.raises(PlanUnavailable):
            await admin.change_plan(session, ADMIN, "creator-1", legacy.id)

    async with session_maker() as session:
        assert (await session.get(User, "creator-1")).plan_id is None
    assert len(await _audit_entries(session_maker)) == before


@pytest.mark.asyncio
async def test_plan_catalogue_edits_are_config_changes(session_maker):
    await _seed(session_maker)

    async with session_maker() as session:
        plan = await admin.create_plan(session, ADMIN, {"name": "Creator", "credits": 100, "price_cents": 1900})
        await admin.update_plan(session, ADMIN, plan.id, {"credits": 120, "price_cents": 1900}, "Promo pack")
        with pytest.raises(DuplicatePlan):
            await admin.create_plan(session, ADMIN, {"name": "Creator", "credits": 10})

        active = await plans.list_plans(session)
        trail = await audit_trail.get_entity_audit_trail(session, "plan", plan.id)

    assert [item.name for item in active] == ["Creator"]
    assert [entry.action for entry in trail] == ["config_change", "config_change"]
    assert trail[0].before_json is None
    assert trail[0].after_json["credits"] == 100
    assert trail[1].before_json == {"credits": 100}
    assert trail[1].after_json == {"credits": 120}


@pytest.mark.asyncio
async def test_resolving_risk_flag_is_audited(session_maker):
    await _seed(session_maker)
    async with session_maker() as session:
        flag = RiskFlag(
            user_id="creator-1",
            tool_name="hooks",
            flag_type="volume_near_limit",
            severity="medium",
            description="Generation volume on hooks: 25/30 this hour, 25/200 today",
        )
        session.add(flag)
        await session.commit()
        flag_id = flag.id

    async with session_maker() as session:
        resolved = await admin.resolve_risk_flag(session, ADMIN, flag_id, "Launch day spike")
        assert resolved.is_resolved is True
        assert resolved.resolved_by == "admin-1"
        with pytest.raises(RiskFlagAlreadyResolved):
            await admin.resolve_risk_flag(session, ADMIN, flag_id)

        assert await risk_guard.list_risk_flags(session) == []
        history = await risk_guard.list_risk_flags(session, resolved=True)
        assert [item.id for item in history] == [flag_id]

    entries = await _audit_entries(session_maker)
    assert [(entry.action, entry.entity_id) for entry in entries] == [("risk_flag_resolve", flag_id)]
    assert entries[0].before_json == {"is_resolved": False, "resolved_by": None}
    assert entries[0].reason == "Launch day spike"

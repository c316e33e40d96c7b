"""
Pytest configuration and fixtures for roster bot tests.
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

# Set environment variables before any rosterbot import
_credentials = tempfile.NamedTemporaryFile(
    "w", suffix=".json", prefix="rosterbot-credentials-", delete=False
)
_credentials.write('{"type": "service_account"}')
_credentials.close()

env_vars = {
    "DISCORD_TOKEN": "MTE0ODk5Mjc4NjU1MTI0Njg0OC5G2dKr2.fake_discord_token_for_testing_with_sufficient_length_12345",
    "DB_USER": "test_user",
    "DB_PASS": "test_password",
    "DB_HOST": "localhost",
    "DB_PORT": "3306",
    "DB_NAME": "test_database",
    "DB_POOL_SIZE": "5",
    "DB_TIMEOUT": "15",
    "DB_CIRCUIT_BREAKER_THRESHOLD": "5",
    "MAX_RECONNECT_ATTEMPTS": "5",
    "GOOGLE_CREDENTIALS_FILE": _credentials.name,
    "SHEET_ID": "test-sheet-id",
    "LOG_DIR": os.path.join(tempfile.gettempdir(), "rosterbot-test-logs"),
    "CONFIG_IMMEDIATE_LOAD": "False",
    "DEBUG": "False",
    "PRODUCTION": "False",
}

for key, value in env_vars.items():
    os.environ[key] = value

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rosterbot.classification import role_catalog_from_dict
from rosterbot.records import RawRecord

GUILD_ID = 900
TANK_ROLE = 11
HEALER_ROLE = 12
DPS_ROLE = 13
SNS_WEAPON = 11
WAND_WEAPON = 12
NO_NAME_ROLE = 101
NO_CLASS_ROLE = 102
NO_THREAD_ROLE = 103
OFFICER_ROLE = 500
REVIEW_CHANNEL = 700
NAME_CHANNEL = 800

CATALOG_DATA = {
    "guild_id": GUILD_ID,
    "officer_role_ids": [OFFICER_ROLE],
    "managed_roles": {
        "missing_name": NO_NAME_ROLE,
        "missing_class": NO_CLASS_ROLE,
        "missing_conversation": NO_THREAD_ROLE,
    },
    "class_categories": [
        {"name": "Tank", "role_ids": [TANK_ROLE]},
        {"name": "Healer", "role_ids": [HEALER_ROLE]},
        {"name": "Ranged", "role_ids": [DPS_ROLE]},
    ],
    "weapon_roles": [
        {"role_id": SNS_WEAPON, "name": "SnS Tank"},
        {"role_id": WAND_WEAPON, "name": "Wand Healer"},
    ],
    "review_channel_ids": [REVIEW_CHANNEL],
    "name_channel_id": NAME_CHANNEL,
}

@pytest.fixture
def catalog():
    """Small role catalog with three categories and two weapon roles."""
    return role_catalog_from_dict(CATALOG_DATA)

def make_member(member_id=1, role_ids=(), name="member", display_name=None, bot=False, guild_id=GUILD_ID):
    """Build a Mock standing in for a discord.Member."""
    member = Mock()
    member.id = member_id
    member.name = name
    member.display_name = display_name or name
    member.bot = bot
    member.mention = f"<@{member_id}>"
    member.roles = [Mock(id=role_id) for role_id in role_ids]
    member.guild = Mock(id=guild_id)
    member.guild_permissions = Mock(manage_roles=False)

    async def add_roles(*roles, reason=None):
        held = {role.id for role in member.roles}
        member.roles = member.roles + [Mock(id=r.id) for r in roles if r.id not in held]

    async def remove_roles(*roles, reason=None):
        removed = {role.id for role in roles}
        member.roles = [role for role in member.roles if role.id not in removed]

    member.add_roles = AsyncMock(side_effect=add_roles)
    member.remove_roles = AsyncMock(side_effect=remove_roles)
    return member

def make_thread(thread_id=1, name="Review [1]", archived=False, locked=False, parent_id=REVIEW_CHANNEL):
    """Build a Mock standing in for a discord.Thread."""
    thread = Mock()
    thread.id = thread_id
    thread.name = name
    thread.archived = archived
    thread.locked = locked
    thread.parent_id = parent_id
    return thread

def make_record(member_id="1", affiliation="Tsunami", registered_name="Aria", **kwargs):
    return RawRecord(
        member_id=str(member_id),
        affiliation=affiliation,
        registered_name=registered_name,
        **kwargs,
    )

@pytest.fixture
def member_factory():
    return make_member

@pytest.fixture
def thread_factory():
    return make_thread

@pytest.fixture
def record_factory():
    return make_record

@pytest.fixture
def fixed_clock():
    return lambda: datetime(2024, 12, 20, 12, 0, tzinfo=timezone.utc)

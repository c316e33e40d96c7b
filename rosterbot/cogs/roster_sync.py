"""
Roster Sync Cog - Discord event ingestion and member commands.

This cog wires the reconciliation engine to the gateway:

Events:
    - on_ready: register and post the name panel, rebuild the review thread
      index, run the first full sync, start the export and sync schedulers
      (once per process)
    - on_member_update: reconcile the member, unless the update only touched
      managed roles (our own corrections echoing back)
    - on_member_remove: drop the member from the roster
    - on_thread_create/update/delete: track review threads and reconcile the
      member the thread belongs to

Commands:
    - /setname: register your own in-game name
    - name panel: a persistent button in the name channel opening a modal
      prefilled with the stored name
    - /info: show the roster entry of a member
    - /ign: officers set the in-game name of another member
    - /review: officers update a member's review metadata

Command handlers delegate to plain coroutine methods returning the reply, so
the logic is testable without an interaction context.
"""

from typing import Any, Optional, Tuple

import discord
from discord.ext import commands

from .. import config
from ..classification import RoleCatalog, load_role_catalog
from ..conversations import ConversationIndex, collect_review_threads, parse_member_id
from ..core.logger import ComponentLogger
from ..core.name_validator import MAX_NAME_LENGTH, MIN_NAME_LENGTH, validate_registered_name
from ..db import is_shutting_down
from ..exporter import ExportScheduler, GoogleSheetsSink
from ..reconciler import ManagedRoleReconciler, is_managed_role_only_change, role_ids_of
from ..records import RawRecord, RecordStore, ReviewData, ReviewUpdateError, StoreUnavailable
from ..roster import MemberView, RosterProjection
from ..scheduler import setup_sync_scheduler, stop_sync_scheduler

_logger = ComponentLogger("roster_sync")

INFO_EMBED_COLOR = 0xC27D0F
NAME_BUTTON_CUSTOM_ID = "roster_set_registered_name"
NAME_PANEL_TEXT = (
    "Please set your in-game name for the guild records:\n\n"
    "*Please ensure the name matches your in-game character name exactly*"
)
NAME_PANEL_HISTORY_LIMIT = 50
NOT_IN_GUILD_MESSAGE = "❌ You must be in one of our guilds to set your in-game name."

def build_info_embed(view: MemberView, display_name: str) -> discord.Embed:
    """Render a roster entry the way /info shows it."""
    embed = discord.Embed(
        title=f"Member Info: {display_name}",
        color=INFO_EMBED_COLOR,
        timestamp=view.last_updated,
    )
    embed.add_field(name="In-Game Name", value=view.registered_name or "Not Set", inline=True)
    embed.add_field(name="Guild", value=view.affiliation or "None", inline=True)
    embed.add_field(name="\u200b", value="\u200b", inline=True)
    embed.add_field(name="Class", value=view.class_category or "Not Set", inline=True)
    embed.add_field(name="Weapon", value=view.weapon_primary or "Not Set", inline=True)
    embed.add_field(name="Review Thread", value="Open" if view.has_open_conversation else "None", inline=True)
    embed.set_footer(text="Last Updated")
    return embed

def build_review_embed(display_name: str, review: ReviewData) -> discord.Embed:
    embed = discord.Embed(title=f"Review: {display_name}", color=INFO_EMBED_COLOR)
    vod = f"Yes ({review.vod_check_date})" if review.has_vod else "No"
    gear = f"Yes ({review.gear_check_date})" if review.gear_checked else "No"
    embed.add_field(name="VOD", value=vod, inline=True)
    embed.add_field(name="Gear Checked", value=gear, inline=True)
    embed.add_field(name="Gear Score", value=str(review.gear_score), inline=True)
    embed.add_field(name="Notes", value=review.notes or "None", inline=False)
    return embed

# #################################################################################### #
#                            Name Panel Components
# #################################################################################### #
class RegisteredNameModal(discord.ui.Modal):
    """Modal collecting a member's in-game name."""

    def __init__(self, cog: "RosterSync", existing_name: str = ""):
        super().__init__(title="What is your in-game name?")
        self.cog = cog
        existing_name = (existing_name or "").strip()
        prefill = existing_name if MIN_NAME_LENGTH <= len(existing_name) <= MAX_NAME_LENGTH else None
        self.name_input = discord.ui.InputText(
            label="In-Game Name:",
            style=discord.InputTextStyle.short,
            min_length=MIN_NAME_LENGTH,
            max_length=MAX_NAME_LENGTH,
            required=True,
            value=prefill,
        )
        self.add_item(self.name_input)

    async def callback(self, interaction: discord.Interaction):
        await self.cog.submit_name(interaction, self.name_input.value or "")

class RegisteredNamePanel(discord.ui.View):
    """Persistent view holding the set-name button; survives restarts via add_view."""

    def __init__(self, cog: "RosterSync"):
        super().__init__(timeout=None)
        self.cog = cog

    @discord.ui.button(
        label="Set/Update In-Game Name",
        style=discord.ButtonStyle.primary,
        custom_id=NAME_BUTTON_CUSTOM_ID,
    )
    async def set_name_button(self, button: discord.ui.Button, interaction: discord.Interaction):
        await self.cog.open_name_modal(interaction)

class RosterSync(commands.Cog):
    """Cog keeping the roster, managed roles and the exported sheet in sync."""

    def __init__(
        self,
        bot: discord.Bot,
        catalog: Optional[RoleCatalog] = None,
        store: Optional[RecordStore] = None,
        exporter: Optional[ExportScheduler] = None,
    ) -> None:
        """
        Initialize the cog and the reconciliation engine it drives.

        Args:
            bot: Discord bot instance
            catalog: Role tables; loaded from the configured JSON file by default
            store: Record store adapter; the MySQL-backed store by default
            exporter: Export scheduler; a Google Sheets export by default
        """
        self.bot = bot
        self.catalog = catalog or load_role_catalog(config.get_roster_roles_file())
        self.store = store or RecordStore(page_size=config.get_record_store_page_size())
        self.conversations = ConversationIndex()
        self.reconciler = ManagedRoleReconciler(self.catalog.managed_roles)
        self.projection = RosterProjection(
            self.store,
            self.conversations,
            self.reconciler,
            self.catalog,
            on_change=self._request_export,
        )
        self.exporter = exporter or ExportScheduler(
            snapshot=self.projection.all,
            sink=GoogleSheetsSink(
                config.get_google_credentials_file(),
                config.get_sheet_id(),
                config.get_sheet_tab(),
            ),
            debounce_seconds=config.get_export_debounce_seconds(),
            periodic_seconds=config.get_export_interval_minutes() * 60,
            max_attempts=config.get_export_max_attempts(),
            retry_delay=config.get_export_retry_delay_seconds(),
            shutting_down=is_shutting_down,
        )
        self._initialized = False
        self._name_panel: Optional[RegisteredNamePanel] = None

    def _request_export(self) -> None:
        self.exporter.request_export()

    def _main_guild(self) -> Optional[discord.Guild]:
        return self.bot.get_guild(self.catalog.guild_id)

    def _in_main_guild(self, guild: Optional[discord.Guild]) -> bool:
        return guild is not None and guild.id == self.catalog.guild_id

    def _is_review_thread(self, thread: Any) -> bool:
        return getattr(thread, "parent_id", None) in self.catalog.review_channel_ids

    def _guild_member(self, user: Any) -> Any:
        guild = self._main_guild()
        member = guild.get_member(user.id) if guild else None
        return member or user

    def is_officer(self, member: discord.Member) -> bool:
        if role_ids_of(member) & self.catalog.officer_role_ids:
            return True
        permissions = getattr(member, "guild_permissions", None)
        return bool(permissions and permissions.manage_roles)

    # #################################################################################### #
    #                            Lifecycle
    # #################################################################################### #
    @commands.Cog.listener()
    async def on_ready(self):
        """Post the name panel, build the thread index, run the first full sync and start the schedulers."""
        if self._initialized:
            _logger.debug("roster_already_initialized")
            return
        self._initialized = True

        guild = self._main_guild()
        if guild is None:
            _logger.error("main_guild_not_found", guild_id=self.catalog.guild_id)
            return

        try:
            threads = await collect_review_threads(guild, self.catalog.review_channel_ids)
            self.conversations.rebuild(threads)
        except discord.HTTPException as e:
            _logger.error("thread_index_rebuild_failed", error=str(e))

        self._name_panel = RegisteredNamePanel(self)
        self.bot.add_view(self._name_panel)
        await self.ensure_name_panel()

        await self.full_sync()
        self.exporter.start()
        self.exporter.request_export()
        setup_sync_scheduler(self.bot, self.full_sync, config.get_full_sync_interval_minutes())
        _logger.info("roster_initialized",
            tracked_members=len(self.projection),
            open_threads=len(self.conversations),
        )

    async def ensure_name_panel(self) -> Optional[discord.Message]:
        """
        Post the set-name panel in the name channel unless the bot already did.

        Returns:
            The existing or newly posted panel message, None if unavailable
        """
        channel_id = self.catalog.name_channel_id
        if channel_id is None:
            _logger.debug("name_panel_disabled")
            return None

        channel = self.bot.get_channel(channel_id)
        try:
            if channel is None:
                channel = await self.bot.fetch_channel(channel_id)
            async for message in channel.history(limit=NAME_PANEL_HISTORY_LIMIT):
                if message.author.id == self.bot.user.id and message.components:
                    _logger.debug("name_panel_already_posted", message_id=message.id)
                    return message
            message = await channel.send(NAME_PANEL_TEXT, view=self._name_panel or RegisteredNamePanel(self))
        except discord.HTTPException as e:
            _logger.warning("name_panel_unavailable", channel_id=channel_id, error=str(e))
            return None

        _logger.info("name_panel_posted", channel_id=channel_id, message_id=message.id)
        return message

    async def full_sync(self) -> bool:
        """Reconcile every member of the main guild. Returns False when aborted."""
        guild = self._main_guild()
        if guild is None:
            _logger.warning("full_sync_no_guild", guild_id=self.catalog.guild_id)
            return False
        if not guild.chunked:
            await guild.chunk()
        return await self.projection.sync_all(guild.members)

    async def shutdown(self) -> None:
        """Stop background work owned by this cog."""
        await stop_sync_scheduler()
        await self.exporter.stop()
        sink = getattr(self.exporter, "_sink", None)
        if isinstance(sink, GoogleSheetsSink):
            await sink.close()

    # #################################################################################### #
    #                            Gateway Events
    # #################################################################################### #
    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member):
        if not self._in_main_guild(after.guild) or after.bot:
            return

        before_roles = role_ids_of(before)
        after_roles = role_ids_of(after)
        if is_managed_role_only_change(before_roles, after_roles, self.catalog.managed_roles):
            _logger.debug("managed_role_echo_ignored", member_id=str(after.id))
            return
        if before_roles == after_roles and before.display_name == after.display_name:
            return

        await self.projection.upsert(after)

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member):
        if not self._in_main_guild(member.guild):
            return
        await self.projection.remove(member.id)

    @commands.Cog.listener()
    async def on_thread_create(self, thread: discord.Thread):
        if not self._is_review_thread(thread):
            return
        await self._refresh_member(self.conversations.on_create(thread))

    @commands.Cog.listener()
    async def on_thread_update(self, before: discord.Thread, after: discord.Thread):
        if not self._is_review_thread(after):
            return
        previous_member = parse_member_id(before.name)
        current_member = parse_member_id(after.name)
        if previous_member and previous_member != current_member:
            self.conversations.on_delete(before)
            await self._refresh_member(previous_member)
        await self._refresh_member(self.conversations.on_update(after))

    @commands.Cog.listener()
    async def on_thread_delete(self, thread: discord.Thread):
        if not self._is_review_thread(thread):
            return
        await self._refresh_member(self.conversations.on_delete(thread))

    async def _refresh_member(self, member_id: Optional[str]) -> None:
        if not member_id:
            return
        guild = self._main_guild()
        member = guild.get_member(int(member_id)) if guild else None
        if member is None:
            _logger.debug("thread_member_not_in_guild", member_id=member_id)
            return
        await self.projection.upsert(member)

    # #################################################################################### #
    #                            Command Logic
    # #################################################################################### #
    async def _affiliated_record(self, member: Any) -> Tuple[Optional[str], Optional[RawRecord]]:
        """Return (error, record); error is set unless the member has an affiliation."""
        try:
            record = await self.store.fetch_one(member.id)
        except StoreUnavailable:
            return "❌ Database error occurred", None
        if record is None or record.affiliation is None:
            return NOT_IN_GUILD_MESSAGE, None
        return None, record

    async def set_name(self, member: discord.Member, name: str) -> str:
        """Validate and store a member's own registered name, then reconcile them."""
        result = validate_registered_name(name)
        if not result.valid:
            return f"❌ {result.error}"

        error, _ = await self._affiliated_record(member)
        if error:
            return error

        try:
            await self.store.set_registered_name(member.id, result.value)
        except StoreUnavailable:
            return "❌ Database error occurred"

        await self.projection.upsert(member)
        return f"✅ Your in-game name is now set to: {result.value}"

    async def set_name_for(self, officer: discord.Member, target: discord.Member, name: str) -> str:
        """Officer override of another member's registered name."""
        if not self.is_officer(officer):
            return "❌ You don't have permission to use this command."

        result = validate_registered_name(name)
        if not result.valid:
            return f"❌ {result.error}"

        try:
            record = await self.store.fetch_one(target.id)
        except StoreUnavailable:
            return "❌ Database error occurred"
        if record is None or record.affiliation is None:
            return "❌ The target user must be in one of our guilds."

        try:
            await self.store.set_registered_name(target.id, result.value)
        except StoreUnavailable:
            return "❌ Database error occurred"

        await self.projection.upsert(target)
        _logger.info("registered_name_overridden",
            member_id=str(target.id),
            officer_id=str(officer.id),
        )
        return f"✅ Set {target.mention}'s in-game name to: {result.value}"

    async def open_name_modal(self, interaction: discord.Interaction) -> None:
        """Answer a name panel click with the prefilled modal, or the refusal."""
        member = self._guild_member(interaction.user)
        error, record = await self._affiliated_record(member)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.send_modal(
            RegisteredNameModal(self, record.registered_name or "")
        )

    async def submit_name(self, interaction: discord.Interaction, name: str) -> None:
        await interaction.response.defer(ephemeral=True)
        reply = await self.set_name(self._guild_member(interaction.user), name)
        await interaction.followup.send(reply, ephemeral=True)

    def lookup_info(self, requester: discord.Member, target: Any):
        """
        Build the /info reply.

        Returns:
            (content, embed) where exactly one is set
        """
        if self.projection.get(requester.id) is None and not self.is_officer(requester):
            return "❌ You must be in one of our guilds to use this command.", None

        view = self.projection.get(target.id)
        if view is None:
            return (
                "No information found for this user. They may not be in any of our guilds.",
                None,
            )
        display_name = getattr(target, "display_name", None) or view.display_name
        return None, build_info_embed(view, display_name)

    async def update_review(self, officer: discord.Member, target: Any, **changes):
        """
        Apply an officer's review update.

        Returns:
            (content, embed) where exactly one is set
        """
        if not self.is_officer(officer):
            return "❌ You don't have permission to use this command.", None
        try:
            review = await self.store.update_review_data(target.id, **changes)
        except ReviewUpdateError as e:
            return f"❌ {e}", None
        except StoreUnavailable:
            return "❌ Database error occurred", None
        return None, build_review_embed(getattr(target, "display_name", str(target.id)), review)

    # #################################################################################### #
    #                            Slash Commands
    # #################################################################################### #
    @discord.slash_command(name="setname", description="Set your in-game name")
    async def setname(
        self,
        ctx: discord.ApplicationContext,
        name: str = discord.Option(str,
            description="Your in-game name",
            min_length=MIN_NAME_LENGTH,
            max_length=MAX_NAME_LENGTH,
        ),
    ):
        await ctx.defer(ephemeral=True)
        if not self._in_main_guild(ctx.guild) or not ctx.author:
            await ctx.followup.send("❌ Invalid request context", ephemeral=True)
            return
        await ctx.followup.send(await self.set_name(ctx.author, name), ephemeral=True)

    @discord.slash_command(name="info", description="Show member information")
    async def info(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="The member to look up"),
    ):
        if not self._in_main_guild(ctx.guild):
            await ctx.respond("❌ Invalid request context", ephemeral=True)
            return
        content, embed = self.lookup_info(ctx.author, user)
        if embed is not None:
            await ctx.respond(embed=embed)
        else:
            await ctx.respond(content, ephemeral=True)

    @discord.slash_command(name="ign", description="Set a member's in-game name")
    @discord.default_permissions(manage_roles=True)
    async def ign(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="The member to update"),
        name: str = discord.Option(str,
            description="The in-game name to set",
            min_length=MIN_NAME_LENGTH,
            max_length=MAX_NAME_LENGTH,
        ),
    ):
        await ctx.defer(ephemeral=True)
        if not self._in_main_guild(ctx.guild):
            await ctx.followup.send("❌ Invalid request context", ephemeral=True)
            return
        await ctx.followup.send(await self.set_name_for(ctx.author, user, name), ephemeral=True)

    @discord.slash_command(name="review", description="Update a member's review status")
    @discord.default_permissions(manage_roles=True)
    async def review(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="The member under review"),
        has_vod: bool = discord.Option(bool, description="VOD available", required=False, default=None),
        gear_checked: bool = discord.Option(bool, description="Gear checked", required=False, default=None),
        gear_score: int = discord.Option(int, description="Gear score", required=False, default=None, min_value=0),
        notes: str = discord.Option(str, description="Review notes", required=False, default=None),
        refresh_vod_date: bool = discord.Option(bool, description="Stamp today's date on the VOD check", required=False, default=False),
        refresh_gear_date: bool = discord.Option(bool, description="Stamp today's date on the gear check", required=False, default=False),
    ):
        await ctx.defer(ephemeral=True)
        if not self._in_main_guild(ctx.guild):
            await ctx.followup.send("❌ Invalid request context", ephemeral=True)
            return
        content, embed = await self.update_review(
            ctx.author,
            user,
            has_vod=has_vod,
            gear_checked=gear_checked,
            gear_score=gear_score,
            notes=notes,
            refresh_vod_date=refresh_vod_date,
            refresh_gear_date=refresh_gear_date,
        )
        if embed is not None:
            await ctx.followup.send(embed=embed, ephemeral=True)
        else:
            await ctx.followup.send(content, ephemeral=True)

def setup(bot: discord.Bot):
    """
    Setup function for the cog.

    Args:
        bot: The Discord bot instance
    """
    bot.add_cog(RosterSync(bot))

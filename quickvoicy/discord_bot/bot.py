"""Discord front end: same invoice commands as Telegram, prefix `/`."""
from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands

from quickvoicy.core.config import settings
from quickvoicy.core.errors import (
    NotFoundError,
    WalletConnectionError,
    WalletError,
    WalletNotConnectedError,
)
from quickvoicy.db.models import PLATFORM_DISCORD, Invoice
from quickvoicy.services import pdf
from quickvoicy.services.invoices import invoice_service, normalize_email, parse_new_command

logger = logging.getLogger(__name__)

PLATFORM = PLATFORM_DISCORD
COMMAND_PREFIX = "/"

COLOR_OK = 0x00FF00
COLOR_INFO = 0x0099FF
COLOR_PENDING = 0xFFA500


def is_command_reply(text: str) -> bool:
    return (text or "").lstrip().startswith(COMMAND_PREFIX)


def parse_client_details(text: str) -> tuple[str, str | None]:
    """`name | email` or `skip`. Raises ValueError on an empty reply or bad email."""
    value = (text or "").strip()
    if value.lower() == "skip":
        return "", None
    parts = [p.strip() for p in value.split("|") if p.strip()]
    if not parts:
        raise ValueError("provide at least a client name or type `skip`")
    name = parts[0][:256]
    email = normalize_email(parts[1]) if len(parts) > 1 else None
    return name, email


def invoice_embed(invoice: Invoice, title: str | None = None) -> discord.Embed:
    embed = discord.Embed(
        title=title or f"📋 Invoice #{invoice.short_id}",
        color=COLOR_OK if invoice.is_paid else COLOR_PENDING,
    )
    embed.add_field(name="Invoice ID", value=invoice.id, inline=True)
    embed.add_field(name="Amount", value=f"{invoice.amount} sats", inline=True)
    embed.add_field(name="Status", value="✅ Paid" if invoice.is_paid else "⏳ Pending", inline=True)
    embed.add_field(name="Description", value=invoice.description[:1024] or "-", inline=False)
    if invoice.client_name:
        client = invoice.client_name + (f" ({invoice.client_email})" if invoice.client_email else "")
        embed.add_field(name="Client", value=client[:1024], inline=False)
    if invoice.created_at:
        embed.timestamp = invoice.created_at
    return embed


HELP_TEXT = (
    "`/connect <nwc_url>` - connect your Lightning wallet\n"
    "`/disconnect` - forget your wallet\n"
    '`/new <amount> "<description>"` - create an invoice\n'
    "`/invoices` - your recent invoices\n"
    "`/stats` - your statistics\n"
    "`/check <id>` - check payment status\n"
    "`/pdf <id>` - invoice PDF (receipt once paid)\n"
    "`/delete <id>` - delete an invoice"
)


class InvoiceCommands(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @commands.command(name="start")
    async def start(self, ctx: commands.Context) -> None:
        await invoice_service.ensure_user(PLATFORM, str(ctx.author.id))
        embed = discord.Embed(
            title="⚡ Welcome to Quickvoicy!",
            description="Create Lightning invoices and get notified when they are paid.",
            color=COLOR_OK,
        )
        embed.add_field(name="Commands", value=HELP_TEXT, inline=False)
        embed.add_field(name="Get Started", value="First, connect your wallet using `/connect`.", inline=False)
        await ctx.reply(embed=embed)

    @commands.command(name="help")
    async def help(self, ctx: commands.Context) -> None:
        await ctx.reply(embed=discord.Embed(title="❓ Quickvoicy Help", description=HELP_TEXT, color=COLOR_INFO))

    @commands.command(name="connect")
    async def connect(self, ctx: commands.Context, uri: str = "") -> None:
        if not uri:
            await ctx.reply("❌ Please provide your NWC URL: `/connect nostr+walletconnect://...`")
            return
        # The URI carries a wallet secret
        try:
            await ctx.message.delete()
        except discord.HTTPException as e:
            logger.debug("Could not delete /connect message: %s", e)

        try:
            await invoice_service.connect_wallet(PLATFORM, str(ctx.author.id), uri)
        except WalletConnectionError as e:
            await ctx.send(f"❌ {ctx.author.mention} could not connect wallet: {e}")
            return
        await ctx.send(f"✅ {ctx.author.mention} wallet connected! Create invoices with `/new`.")

    @commands.command(name="disconnect")
    async def disconnect(self, ctx: commands.Context) -> None:
        await invoice_service.disconnect_wallet(PLATFORM, str(ctx.author.id))
        await ctx.reply("🔌 Wallet disconnected.")

    @commands.command(name="new")
    async def new(self, ctx: commands.Context, *, args: str = "") -> None:
        uid = str(ctx.author.id)
        try:
            amount, description = parse_new_command(args)
        except ValueError as e:
            await ctx.reply(f'❌ {e}\nExample: `/new 5000 "Logo design"`')
            return
        user = await invoice_service.ensure_user(PLATFORM, uid)
        if not user.wallet_credential:
            await ctx.reply("❌ Please connect your wallet first using `/connect`.")
            return

        await ctx.reply(
            "Please provide client details:\n"
            "**Format:** `<client_name> | <client_email>`\n"
            "• `John Doe` (name only)\n"
            "• `John Doe | john@example.com` (name + email)\n"
            "• Type `skip` to proceed without client details"
        )

        def same_author(m: discord.Message) -> bool:
            return m.author.id == ctx.author.id and m.channel.id == ctx.channel.id

        try:
            reply = await self.bot.wait_for("message", check=same_author, timeout=settings.form_ttl_sec)
        except asyncio.TimeoutError:
            await ctx.reply("❌ Invoice creation timed out.")
            return
        if is_command_reply(reply.content):
            # a new command abandons the form; the command itself still runs
            await ctx.reply("Invoice creation cancelled.")
            return
        try:
            client_name, client_email = parse_client_details(reply.content)
        except ValueError as e:
            await reply.reply(f"❌ {e}. Start again with `/new`.")
            return

        try:
            invoice = await invoice_service.create_invoice(
                PLATFORM, uid, amount, description,
                client_name=client_name, client_email=client_email,
            )
        except WalletNotConnectedError:
            await ctx.reply("❌ Please connect your wallet first using `/connect`.")
            return
        except (WalletConnectionError, WalletError) as e:
            await ctx.reply(f"❌ Wallet error: {e}")
            return

        embed = invoice_embed(invoice, title="✅ Invoice Created!")
        embed.add_field(name="Lightning Invoice", value=f"```{invoice.wallet_invoice[:1000]}```", inline=False)
        await ctx.reply(embed=embed)
        await self._send_pdf(ctx, invoice, "Invoice PDF - share it with your client")

    @commands.command(name="invoices")
    async def invoices(self, ctx: commands.Context) -> None:
        invoices = await invoice_service.list_invoices(PLATFORM, str(ctx.author.id), limit=10)
        if not invoices:
            await ctx.reply("No invoices found. Create your first invoice with `/new`.")
            return
        embed = discord.Embed(title="📋 Your Recent Invoices", color=COLOR_INFO)
        for inv in invoices:
            mark = "✅" if inv.is_paid else "⏳"
            embed.add_field(
                name=f"{mark} #{inv.short_id} - {inv.amount} sats",
                value=inv.description[:200] or "-",
                inline=False,
            )
        await ctx.reply(embed=embed)

    @commands.command(name="stats")
    async def stats(self, ctx: commands.Context) -> None:
        stats = await invoice_service.user_stats(PLATFORM, str(ctx.author.id))
        embed = discord.Embed(title="📊 Your Statistics", color=COLOR_INFO)
        embed.add_field(name="Total Invoices", value=str(stats.total_invoices), inline=True)
        embed.add_field(name="Paid", value=str(stats.paid_invoices), inline=True)
        embed.add_field(name="Pending", value=str(stats.pending_invoices), inline=True)
        embed.add_field(name="Total Earned", value=f"{stats.total_earned} sats", inline=True)
        embed.add_field(name="Success Rate", value=f"{stats.success_rate}%", inline=True)
        await ctx.reply(embed=embed)

    @commands.command(name="check")
    async def check(self, ctx: commands.Context, invoice_ref: str = "") -> None:
        try:
            invoice, transitioned = await invoice_service.check_invoice(PLATFORM, str(ctx.author.id), invoice_ref)
        except NotFoundError:
            await ctx.reply("❌ Invoice not found.")
            return
        except WalletNotConnectedError:
            await ctx.reply("❌ Connect your wallet to check payments: `/connect`.")
            return
        except (WalletConnectionError, WalletError) as e:
            await ctx.reply(f"❌ Status check failed: {e}")
            return
        await ctx.reply(embed=invoice_embed(invoice, title="🎉 Payment received!" if transitioned else None))

    @commands.command(name="pdf")
    async def pdf_document(self, ctx: commands.Context, invoice_ref: str = "") -> None:
        try:
            invoice = await invoice_service.get_owned_invoice(PLATFORM, str(ctx.author.id), invoice_ref)
        except NotFoundError:
            await ctx.reply("❌ Invoice not found.")
            return
        await self._send_pdf(ctx, invoice, f"{'Receipt' if invoice.is_paid else 'Invoice'} #{invoice.short_id}")

    @commands.command(name="delete")
    async def delete(self, ctx: commands.Context, invoice_ref: str = "") -> None:
        try:
            invoice = await invoice_service.delete_invoice(PLATFORM, str(ctx.author.id), invoice_ref)
        except NotFoundError:
            await ctx.reply("❌ Invoice not found.")
            return
        await ctx.reply(f"🗑 Invoice #{invoice.short_id} deleted.")

    async def _send_pdf(self, ctx: commands.Context, invoice: Invoice, content: str) -> None:
        render = pdf.render_receipt_pdf if invoice.is_paid else pdf.render_invoice_pdf
        try:
            path = await asyncio.to_thread(render, invoice)
        except Exception as e:
            logger.exception("PDF for invoice %s failed: %s", invoice.id, e)
            await ctx.reply("❌ Failed to generate PDF.")
            return
        try:
            upload = discord.File(path, filename=pdf.download_name(invoice, invoice.is_paid))
            await ctx.reply(content=content, file=upload)
        finally:
            pdf.cleanup(path)

    async def cog_command_error(self, ctx: commands.Context, error: Exception) -> None:
        original = getattr(error, "original", error)
        logger.exception("Command %s failed: %s", ctx.command, original, exc_info=original)
        await ctx.reply("❌ An error occurred while processing your command.")


class QuickvoicyBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=COMMAND_PREFIX, intents=intents, help_command=None)

    async def setup_hook(self) -> None:
        await self.add_cog(InvoiceCommands(self))

    async def on_ready(self) -> None:
        logger.info("Discord bot logged in as %s", self.user)
        await self.change_presence(
            activity=discord.Activity(type=discord.ActivityType.watching, name="⚡ /help for commands")
        )

    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            await ctx.reply("❌ Unknown command. Use `/help` to see available commands.")
        elif ctx.cog is None:
            logger.warning("Command error: %s", error)

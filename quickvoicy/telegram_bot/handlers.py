"""Telegram handlers: wallet connect, invoice form, invoice list/status/PDF."""
from __future__ import annotations

import asyncio
import logging
import time

from aiogram import F, Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, FSInputFile, InlineKeyboardButton, InlineKeyboardMarkup, Message

from quickvoicy.core.config import settings
from quickvoicy.core.errors import (
    NotFoundError,
    WalletConnectionError,
    WalletError,
    WalletNotConnectedError,
)
from quickvoicy.db.models import PLATFORM_TELEGRAM, Invoice
from quickvoicy.services import pdf
from quickvoicy.services.invoices import TEMPLATES, invoice_service, normalize_email, parse_new_command
from quickvoicy.telegram_bot.fsm import InvoiceForm

logger = logging.getLogger(__name__)
router = Router()

PLATFORM = PLATFORM_TELEGRAM


def _uid(obj: Message | CallbackQuery) -> str:
    return str(obj.from_user.id) if obj.from_user else ""


def _esc(text: str | None) -> str:
    return (text or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


# Keyboards

def _kb_main() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="⚡ Create Invoice", callback_data="create_invoice"),
            InlineKeyboardButton(text="📋 My Invoices", callback_data="view_invoices"),
        ],
        [
            InlineKeyboardButton(text="💰 Statistics", callback_data="view_stats"),
            InlineKeyboardButton(text="🔗 Wallet", callback_data="connect_wallet"),
        ],
        [InlineKeyboardButton(text="❓ Help", callback_data="help")],
    ])


def _kb_back() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="🏠 Back to Menu", callback_data="main_menu")],
    ])


def _kb_templates() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="💻 Web Dev (10k sats)", callback_data="template_webdev"),
            InlineKeyboardButton(text="🎨 Design (5k sats)", callback_data="template_design"),
        ],
        [
            InlineKeyboardButton(text="📞 Consulting (2k sats)", callback_data="template_consulting"),
            InlineKeyboardButton(text="🔧 Custom", callback_data="template_custom"),
        ],
        [InlineKeyboardButton(text="🏠 Back to Menu", callback_data="main_menu")],
    ])


def _kb_invoice(invoice: Invoice) -> InlineKeyboardMarkup:
    rows = [[
        InlineKeyboardButton(text="📄 PDF", callback_data=f"pdf_{invoice.id}"),
        InlineKeyboardButton(text="🔄 Check Status", callback_data=f"check_{invoice.id}"),
    ]]
    if invoice.is_paid:
        rows.append([InlineKeyboardButton(text="🧾 Receipt", callback_data=f"receipt_{invoice.id}")])
    rows.append([InlineKeyboardButton(text="🗑 Delete", callback_data=f"delete_{invoice.id}")])
    rows.append([InlineKeyboardButton(text="🏠 Back to Menu", callback_data="main_menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def _kb_skip_email() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="⏭ Skip email", callback_data="skip_email")],
        [InlineKeyboardButton(text="✖ Cancel", callback_data="cancel_form")],
    ])


def _kb_confirm_delete(invoice_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="🗑 Yes, delete", callback_data=f"confirm_delete_{invoice_id}"),
        InlineKeyboardButton(text="✖ Keep", callback_data="main_menu"),
    ]])


# Texts

def _invoice_text(invoice: Invoice) -> str:
    status = "✅ Paid" if invoice.is_paid else "⏳ Pending"
    lines = [
        f"📋 <b>Invoice #{invoice.short_id}</b>",
        f"💰 Amount: <code>{invoice.amount} sats</code>",
        f"📝 {_esc(invoice.description)}",
    ]
    if invoice.client_name:
        lines.append(f"👤 {_esc(invoice.client_name)}" + (f" ({_esc(invoice.client_email)})" if invoice.client_email else ""))
    lines.append(f"📊 Status: {status}")
    if invoice.created_at:
        lines.append(f"📅 Created: {invoice.created_at:%Y-%m-%d}")
    return "\n".join(lines)


HELP_TEXT = (
    "❓ <b>Quickvoicy Help</b>\n\n"
    "🚀 <b>Quick start:</b>\n"
    "1. Connect a Lightning wallet that supports Nostr Wallet Connect\n"
    "2. Create an invoice\n"
    "3. Share it with your client\n"
    "4. Get notified when it is paid\n\n"
    "📝 <b>Commands:</b>\n"
    "• <code>/connect nostr+walletconnect://...</code> - connect wallet\n"
    "• <code>/disconnect</code> - forget wallet\n"
    '• <code>/new 5000 "Logo design"</code> - create invoice\n'
    "• <code>/invoices</code> - recent invoices\n"
    "• <code>/stats</code> - statistics\n"
    "• <code>/check ID</code>, <code>/pdf ID</code>, <code>/receipt ID</code>, <code>/delete ID</code>\n"
    "• <code>/cancel</code> - abort the current form\n\n"
    "🔗 Works with Alby, Mutiny, Zeus and any NWC wallet."
)


async def _menu_text(uid: str) -> str:
    user = await invoice_service.ensure_user(PLATFORM, uid)
    stats = await invoice_service.user_stats(PLATFORM, uid)
    wallet = "✅ Wallet connected" if user.wallet_credential else "⚠️ Wallet not connected"
    if stats.total_invoices:
        quick = (
            f"• Total invoices: {stats.total_invoices}\n"
            f"• Earnings: {stats.total_earned} sats\n"
            f"• Success rate: {stats.success_rate}%"
        )
    else:
        quick = "• No data yet - create your first invoice!"
    return f"🏠 <b>Main Menu</b>\n\n📊 <b>Quick stats:</b>\n{quick}\n\n{wallet}\n\nChoose an action below:"


async def _stats_text(uid: str) -> str:
    stats = await invoice_service.user_stats(PLATFORM, uid)
    return (
        "📊 <b>Your Statistics</b>\n\n"
        f"• Total invoices: <code>{stats.total_invoices}</code>\n"
        f"• Paid: <code>{stats.paid_invoices}</code>\n"
        f"• Pending: <code>{stats.pending_invoices}</code>\n"
        f"• Total earned: <code>{stats.total_earned} sats</code>\n"
        f"• Success rate: <code>{stats.success_rate}%</code>"
    )


async def _invoices_text(uid: str) -> tuple[str, InlineKeyboardMarkup]:
    invoices = await invoice_service.list_invoices(PLATFORM, uid, limit=10)
    if not invoices:
        return "📋 <b>No invoices yet</b>\n\n💡 Create your first invoice with /new", _kb_back()
    lines = ["📋 <b>Your recent invoices</b>\n"]
    buttons = []
    for inv in invoices[:5]:
        mark = "✅" if inv.is_paid else "⏳"
        lines.append(f"{mark} <b>#{inv.short_id}</b> - {inv.amount} sats - {_esc(inv.description)}")
        buttons.append([InlineKeyboardButton(text=f"{mark} #{inv.short_id}", callback_data=f"details_{inv.id}")])
    if len(invoices) > 5:
        lines.append(f"\n📊 Showing 5 of {len(invoices)} recent invoices")
    buttons.append([InlineKeyboardButton(text="🏠 Back to Menu", callback_data="main_menu")])
    return "\n".join(lines), InlineKeyboardMarkup(inline_keyboard=buttons)


# Commands

@router.message(CommandStart())
@router.message(Command("menu"))
async def cmd_start(message: Message, state: FSMContext) -> None:
    await state.clear()
    uid = _uid(message)
    name = _esc(message.from_user.first_name if message.from_user else "") or "there"
    try:
        menu = await _menu_text(uid)
    except Exception as e:
        logger.exception("Start for %s failed: %s", uid, e)
        await message.answer("❌ Something went wrong. Please try again.")
        return
    await message.answer(
        f"🎉 <b>Welcome to Quickvoicy, {name}!</b>\n⚡ <i>Lightning invoices in seconds</i>\n\n{menu}",
        parse_mode="HTML",
        reply_markup=_kb_main(),
    )


@router.message(Command("help"))
async def cmd_help(message: Message) -> None:
    await message.answer(HELP_TEXT, parse_mode="HTML", reply_markup=_kb_back())


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext) -> None:
    await state.clear()
    await message.answer("✖ Cancelled.", reply_markup=_kb_back())


@router.message(Command("connect"))
async def cmd_connect(message: Message, command: CommandObject) -> None:
    uri = (command.args or "").strip()
    if not uri:
        await message.answer(
            "❌ Please provide your NWC URL:\n<code>/connect nostr+walletconnect://...</code>",
            parse_mode="HTML",
        )
        return
    # The URI carries a wallet secret; don't leave it in the chat history
    try:
        await message.delete()
    except Exception as e:
        logger.debug("Could not delete /connect message: %s", e)

    status = await message.answer("🔄 <b>Checking wallet connection...</b>", parse_mode="HTML")
    try:
        await invoice_service.connect_wallet(PLATFORM, _uid(message), uri)
    except WalletConnectionError as e:
        await status.edit_text(f"❌ <b>Could not connect wallet</b>\n\n{_esc(str(e))}", parse_mode="HTML")
        return
    except Exception as e:
        logger.exception("Connect wallet failed: %s", e)
        await status.edit_text("❌ Could not connect wallet. Please try again.")
        return
    await status.edit_text(
        "✅ <b>Wallet connected!</b>\n\nYou can now create invoices with /new",
        parse_mode="HTML",
        reply_markup=_kb_back(),
    )


@router.message(Command("disconnect"))
async def cmd_disconnect(message: Message) -> None:
    await invoice_service.disconnect_wallet(PLATFORM, _uid(message))
    await message.answer("🔌 Wallet disconnected. Pending invoices will not be checked until you reconnect.")


@router.message(Command("new"))
async def cmd_new(message: Message, command: CommandObject, state: FSMContext) -> None:
    uid = _uid(message)
    user = await invoice_service.ensure_user(PLATFORM, uid)
    if not user.wallet_credential:
        await message.answer("⚠️ Please connect your wallet first with /connect")
        return
    if not command.args:
        await message.answer(
            '⚡ <b>Create New Invoice</b>\n\nSend <code>/new 5000 "Website development"</code> '
            "or pick a template:",
            parse_mode="HTML",
            reply_markup=_kb_templates(),
        )
        return
    try:
        amount, description = parse_new_command(command.args)
    except ValueError as e:
        await message.answer(f'❌ {_esc(str(e))}\nExample: <code>/new 5000 "Logo design"</code>', parse_mode="HTML")
        return
    await _start_form(message, state, amount, description)


@router.message(Command("invoices"))
async def cmd_invoices(message: Message) -> None:
    text, kb = await _invoices_text(_uid(message))
    await message.answer(text, parse_mode="HTML", reply_markup=kb)


@router.message(Command("stats"))
async def cmd_stats(message: Message) -> None:
    await message.answer(await _stats_text(_uid(message)), parse_mode="HTML", reply_markup=_kb_back())


@router.message(Command("check"))
async def cmd_check(message: Message, command: CommandObject) -> None:
    await _check_status(message, _uid(message), (command.args or "").strip())


@router.message(Command("pdf"))
async def cmd_pdf(message: Message, command: CommandObject) -> None:
    await _send_pdf(message, _uid(message), (command.args or "").strip(), receipt=False)


@router.message(Command("receipt"))
async def cmd_receipt(message: Message, command: CommandObject) -> None:
    await _send_pdf(message, _uid(message), (command.args or "").strip(), receipt=True)


@router.message(Command("delete"))
async def cmd_delete(message: Message, command: CommandObject) -> None:
    ref = (command.args or "").strip()
    try:
        invoice = await invoice_service.get_owned_invoice(PLATFORM, _uid(message), ref)
    except NotFoundError:
        await message.answer("❌ Invoice not found.")
        return
    await message.answer(
        f"🗑 Delete invoice <b>#{invoice.short_id}</b>? It will no longer be checked for payment.",
        parse_mode="HTML",
        reply_markup=_kb_confirm_delete(invoice.id),
    )


# Invoice form

async def _start_form(message: Message, state: FSMContext, amount: int, description: str) -> None:
    await state.set_state(InvoiceForm.waiting_client_name)
    await state.update_data(amount=amount, description=description, started_at=time.time())
    await message.answer(
        f"👤 <b>Client information</b>\n\n💰 {amount} sats - {_esc(description)}\n\n📝 Send the client name:",
        parse_mode="HTML",
        reply_markup=InlineKeyboardMarkup(inline_keyboard=[
            [InlineKeyboardButton(text="✖ Cancel", callback_data="cancel_form")],
        ]),
    )


async def _form_data(message: Message, state: FSMContext) -> dict | None:
    """Current form data, or None (state cleared) if the form expired."""
    data = await state.get_data()
    started = data.get("started_at") or 0
    if time.time() - started > settings.form_ttl_sec:
        await state.clear()
        await message.answer("⌛ This invoice form expired. Start again with /new")
        return None
    return data


@router.message(InvoiceForm.waiting_amount, F.text)
async def on_custom_amount(message: Message, state: FSMContext) -> None:
    if await _form_data(message, state) is None:
        return
    try:
        amount, description = parse_new_command(message.text)
    except ValueError as e:
        await message.answer(f'❌ {_esc(str(e))}\nSend: <code>5000 "Logo design"</code>', parse_mode="HTML")
        return
    await _start_form(message, state, amount, description)


@router.message(InvoiceForm.waiting_client_name, F.text)
async def on_client_name(message: Message, state: FSMContext) -> None:
    if await _form_data(message, state) is None:
        return
    name = message.text.strip()
    if not name or len(name) > 256:
        await message.answer("❌ Please send a client name (up to 256 characters).")
        return
    await state.update_data(client_name=name)
    await state.set_state(InvoiceForm.waiting_client_email)
    await message.answer("📧 Send the client email, or skip:", reply_markup=_kb_skip_email())


@router.message(InvoiceForm.waiting_client_email, F.text)
async def on_client_email(message: Message, state: FSMContext) -> None:
    data = await _form_data(message, state)
    if data is None:
        return
    try:
        email = normalize_email(message.text)
    except ValueError as e:
        await message.answer(f"❌ {_esc(str(e))}. Send a valid email or press Skip.", reply_markup=_kb_skip_email())
        return
    await _finish_form(message, _uid(message), state, data, email)


@router.callback_query(F.data == "skip_email", InvoiceForm.waiting_client_email)
async def cb_skip_email(cb: CallbackQuery, state: FSMContext) -> None:
    await cb.answer()
    data = await _form_data(cb.message, state)
    if data is None:
        return
    await _finish_form(cb.message, _uid(cb), state, data, None)


@router.callback_query(F.data == "cancel_form")
async def cb_cancel_form(cb: CallbackQuery, state: FSMContext) -> None:
    await cb.answer("Cancelled")
    await state.clear()
    await cb.message.answer("✖ Invoice creation cancelled.", reply_markup=_kb_back())


async def _finish_form(message: Message, uid: str, state: FSMContext, data: dict, email: str | None) -> None:
    await state.clear()
    status = await message.answer("⚡ <b>Creating invoice...</b>", parse_mode="HTML")
    try:
        invoice = await invoice_service.create_invoice(
            PLATFORM, uid,
            amount=int(data["amount"]),
            description=data["description"],
            client_name=data.get("client_name", ""),
            client_email=email,
        )
    except WalletNotConnectedError:
        await status.edit_text("⚠️ Please connect your wallet first with /connect")
        return
    except (WalletConnectionError, WalletError) as e:
        await status.edit_text(f"❌ <b>Wallet error</b>\n\n{_esc(str(e))}", parse_mode="HTML")
        return
    except Exception as e:
        logger.exception("Create invoice for %s failed: %s", uid, e)
        await status.edit_text("❌ Failed to create invoice. Please try again.")
        return

    await status.edit_text(
        f"✅ <b>Invoice created!</b>\n\n{_invoice_text(invoice)}\n\n"
        f"⚡ <b>Lightning invoice:</b>\n<code>{_esc(invoice.wallet_invoice)}</code>",
        parse_mode="HTML",
        reply_markup=_kb_invoice(invoice),
    )
    await _deliver_pdf(message, invoice, receipt=False)


# Shared actions

async def _check_status(message: Message, uid: str, ref: str) -> None:
    if not ref:
        await message.answer("❌ Usage: <code>/check ID</code>", parse_mode="HTML")
        return
    status = await message.answer("🔄 <b>Checking payment status...</b>", parse_mode="HTML")
    try:
        invoice, transitioned = await invoice_service.check_invoice(PLATFORM, uid, ref)
    except NotFoundError:
        await status.edit_text("❌ Invoice not found.")
        return
    except WalletNotConnectedError:
        await status.edit_text("⚠️ Connect your wallet to check payments: /connect")
        return
    except (WalletConnectionError, WalletError) as e:
        await status.edit_text(f"❌ <b>Status check failed</b>\n\n{_esc(str(e))}", parse_mode="HTML")
        return
    header = "🎉 <b>Payment received!</b>\n\n" if transitioned else ""
    await status.edit_text(header + _invoice_text(invoice), parse_mode="HTML", reply_markup=_kb_invoice(invoice))


async def _deliver_pdf(message: Message, invoice: Invoice, receipt: bool) -> None:
    render = pdf.render_receipt_pdf if receipt else pdf.render_invoice_pdf
    try:
        path = await asyncio.to_thread(render, invoice)
    except Exception as e:
        logger.exception("PDF for invoice %s failed: %s", invoice.id, e)
        await message.answer("❌ Failed to generate PDF. Please try again.")
        return
    try:
        await message.answer_document(
            FSInputFile(path, filename=pdf.download_name(invoice, receipt)),
            caption=f"📄 {'Receipt' if receipt else 'Invoice'} #{invoice.short_id} - {invoice.amount} sats",
        )
    finally:
        pdf.cleanup(path)


async def _send_pdf(message: Message, uid: str, ref: str, receipt: bool) -> None:
    try:
        invoice = await invoice_service.get_owned_invoice(PLATFORM, uid, ref)
    except NotFoundError:
        await message.answer("❌ Invoice not found.")
        return
    if receipt and not invoice.is_paid:
        await message.answer("⏳ Receipts are available once the invoice is paid.")
        return
    await _deliver_pdf(message, invoice, receipt=receipt)


# Callbacks

@router.callback_query(F.data == "main_menu")
async def cb_main_menu(cb: CallbackQuery, state: FSMContext) -> None:
    await cb.answer()
    await state.clear()
    await cb.message.edit_text(await _menu_text(_uid(cb)), parse_mode="HTML", reply_markup=_kb_main())


@router.callback_query(F.data == "help")
async def cb_help(cb: CallbackQuery) -> None:
    await cb.answer()
    await cb.message.edit_text(HELP_TEXT, parse_mode="HTML", reply_markup=_kb_back())


@router.callback_query(F.data == "view_stats")
async def cb_stats(cb: CallbackQuery) -> None:
    await cb.answer()
    await cb.message.edit_text(await _stats_text(_uid(cb)), parse_mode="HTML", reply_markup=_kb_back())


@router.callback_query(F.data == "view_invoices")
async def cb_invoices(cb: CallbackQuery) -> None:
    await cb.answer()
    text, kb = await _invoices_text(_uid(cb))
    await cb.message.edit_text(text, parse_mode="HTML", reply_markup=kb)


@router.callback_query(F.data == "connect_wallet")
async def cb_connect_wallet(cb: CallbackQuery) -> None:
    await cb.answer()
    user = await invoice_service.ensure_user(PLATFORM, _uid(cb))
    if user.wallet_credential:
        text = (
            "🔗 <b>Wallet connected</b>\n\nYour Lightning wallet is ready to receive payments.\n"
            "Send /disconnect to remove it or /connect with a new URL to replace it."
        )
    else:
        text = (
            "🔗 <b>No wallet connected</b>\n\n"
            "Get a Nostr Wallet Connect URL from your wallet (Alby, Mutiny, Zeus...) and send:\n"
            "<code>/connect nostr+walletconnect://...</code>"
        )
    await cb.message.edit_text(text, parse_mode="HTML", reply_markup=_kb_back())


@router.callback_query(F.data == "create_invoice")
async def cb_create_invoice(cb: CallbackQuery) -> None:
    await cb.answer()
    user = await invoice_service.ensure_user(PLATFORM, _uid(cb))
    if not user.wallet_credential:
        await cb.message.edit_text(
            "⚠️ <b>Wallet required</b>\n\nPlease connect your Lightning wallet first.",
            parse_mode="HTML",
            reply_markup=InlineKeyboardMarkup(inline_keyboard=[
                [InlineKeyboardButton(text="🔗 Connect Wallet", callback_data="connect_wallet")],
                [InlineKeyboardButton(text="🏠 Back to Menu", callback_data="main_menu")],
            ]),
        )
        return
    await cb.message.edit_text(
        '⚡ <b>Create New Invoice</b>\n\nSend <code>/new 5000 "Website development"</code> '
        "or pick a template:",
        parse_mode="HTML",
        reply_markup=_kb_templates(),
    )


@router.callback_query(F.data.startswith("template_"))
async def cb_template(cb: CallbackQuery, state: FSMContext) -> None:
    await cb.answer()
    key = cb.data.removeprefix("template_")
    if key == "custom":
        await state.set_state(InvoiceForm.waiting_amount)
        await state.update_data(started_at=time.time())
        await cb.message.edit_text(
            '💰 <b>Custom invoice</b>\n\nSend amount and description: <code>5000 "Logo design"</code>',
            parse_mode="HTML",
        )
        return
    template = TEMPLATES.get(key)
    if template is None:
        return
    amount, description = template
    await _start_form(cb.message, state, amount, description)


@router.callback_query(F.data.startswith("details_"))
async def cb_details(cb: CallbackQuery) -> None:
    await cb.answer()
    try:
        invoice = await invoice_service.get_owned_invoice(PLATFORM, _uid(cb), cb.data.removeprefix("details_"))
    except NotFoundError:
        await cb.message.answer("❌ Invoice not found.")
        return
    await cb.message.edit_text(_invoice_text(invoice), parse_mode="HTML", reply_markup=_kb_invoice(invoice))


@router.callback_query(F.data.startswith("check_"))
async def cb_check(cb: CallbackQuery) -> None:
    await cb.answer()
    await _check_status(cb.message, _uid(cb), cb.data.removeprefix("check_"))


@router.callback_query(F.data.startswith("pdf_"))
async def cb_pdf(cb: CallbackQuery) -> None:
    await cb.answer("Generating PDF...")
    await _send_pdf(cb.message, _uid(cb), cb.data.removeprefix("pdf_"), receipt=False)


@router.callback_query(F.data.startswith("receipt_"))
async def cb_receipt(cb: CallbackQuery) -> None:
    await cb.answer("Generating receipt...")
    await _send_pdf(cb.message, _uid(cb), cb.data.removeprefix("receipt_"), receipt=True)


@router.callback_query(F.data.startswith("delete_"))
async def cb_delete(cb: CallbackQuery) -> None:
    await cb.answer()
    invoice_id = cb.data.removeprefix("delete_")
    await cb.message.edit_text(
        "🗑 Delete this invoice? It will no longer be checked for payment.",
        reply_markup=_kb_confirm_delete(invoice_id),
    )


@router.callback_query(F.data.startswith("confirm_delete_"))
async def cb_confirm_delete(cb: CallbackQuery) -> None:
    await cb.answer()
    try:
        invoice = await invoice_service.delete_invoice(PLATFORM, _uid(cb), cb.data.removeprefix("confirm_delete_"))
    except NotFoundError:
        await cb.message.edit_text("❌ Invoice not found.", reply_markup=_kb_back())
        return
    await cb.message.edit_text(f"🗑 Invoice #{invoice.short_id} deleted.", reply_markup=_kb_back())

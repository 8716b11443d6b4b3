"""FSM states for the invoice form: amount, then client name and email."""
from aiogram.fsm.state import State, StatesGroup


class InvoiceForm(StatesGroup):
    waiting_amount = State()
    waiting_client_name = State()
    waiting_client_email = State()

"""
USSD menu state machine.

The gateway owns the session: every request carries the full keystroke path
(e.g. ``"1*2*1"``) and no state is kept here between requests. The current
menu state is re-derived from that path on each call, so the same phone and
path always lead to the same screen. Terminal screens may trigger queue or
purchase operations.

Responses are ``CON <text>`` (gateway prompts for more input) or
``END <text>`` (session over). Any input that is not a valid option for the
current screen ends the session.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from app.core.config import Settings
from app.core.errors import NotFoundError, ValidationError
from app.core.phone import is_valid_phone, mask_phone, normalize_phone
from app.core.security import log_security_event
from app.services.notifications import Notification
from app.services.payments import DATA_BUNDLES, PurchaseResult
from app.services.positions import is_valid_ticket_number
from app.services.queue_engine import QueueEngine
from app.services.rate_limit import PhoneRateLimiter

logger = logging.getLogger(__name__)

CONTINUE = "CON"
END = "END"

YES = "1"
NO = "2"

INVALID_OPTION = "Invalid option. Please dial again to restart."
SERVICE_UNAVAILABLE = "Service temporarily unavailable. Please try again later."


class PurchaseGateway(Protocol):
    def buy_airtime(self, phone: str, amount: int, recipient: str) -> PurchaseResult: ...

    def buy_data(self, phone: str, bundle_key: str) -> PurchaseResult: ...


@dataclass(frozen=True)
class UssdResponse:
    action: str
    text: str
    notifications: Tuple[Notification, ...] = ()

    @classmethod
    def proceed(cls, text: str) -> "UssdResponse":
        return cls(CONTINUE, text)

    @classmethod
    def end(cls, text: str, notifications: Tuple[Notification, ...] = ()) -> "UssdResponse":
        return cls(END, text, tuple(notifications))

    @property
    def is_terminal(self) -> bool:
        return self.action == END

    def render(self) -> str:
        return f"{self.action} {self.text}"


class MenuOption(str, Enum):
    JOIN_QUEUE = "1"
    CHECK_STATUS = "2"
    BUY_AIRTIME = "3"
    BUY_DATA = "4"


def parse_input_path(text: Optional[str], delimiter: str = "*") -> List[str]:
    if not text:
        return []
    return text.split(delimiter)


Handler = Callable[[str, List[str], Optional[str]], UssdResponse]


class UssdStateMachine:
    def __init__(
        self,
        engine: QueueEngine,
        purchases: PurchaseGateway,
        rate_limiter: PhoneRateLimiter,
        settings: Settings,
    ):
        self.engine = engine
        self.purchases = purchases
        self.rate_limiter = rate_limiter
        self.settings = settings
        self._handlers: Dict[MenuOption, Handler] = {
            MenuOption.JOIN_QUEUE: self._join_queue,
            MenuOption.CHECK_STATUS: self._check_status,
            MenuOption.BUY_AIRTIME: self._buy_airtime,
            MenuOption.BUY_DATA: self._buy_data,
        }

    def handle(self, phone_number: Optional[str], text: Optional[str], session_id: Optional[str] = None) -> UssdResponse:
        phone = normalize_phone(phone_number)
        if not is_valid_phone(phone):
            log_security_event("ussd_invalid_phone", phone_number, session_id=session_id)
            return UssdResponse.end("Invalid request: phone number missing or malformed.")

        if not self.rate_limiter.allow(phone):
            log_security_event("ussd_rate_limited", phone, session_id=session_id)
            return UssdResponse.end("Too many requests. Please wait a few seconds and dial again.")

        path = parse_input_path(text, self.settings.USSD_DELIMITER)
        logger.debug("USSD session %s: phone=%s step=%s", session_id, mask_phone(phone), len(path))

        try:
            if not path:
                return self._main_menu()
            try:
                option = MenuOption(path[0])
            except ValueError:
                return self._invalid(phone, session_id, step=1, value=path[0])
            return self._handlers[option](phone, path[1:], session_id)
        except Exception:
            logger.error("USSD session %s failed for %s", session_id, mask_phone(phone), exc_info=True)
            return UssdResponse.end(SERVICE_UNAVAILABLE)

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------
    def _main_menu(self) -> UssdResponse:
        return UssdResponse.proceed(
            f"{self.settings.USSD_BRAND}:\n"
            "1. Join Queue\n"
            "2. Check Status\n"
            "3. Buy Airtime\n"
            "4. Buy Data\n\n"
            "Reply with 1-4"
        )

    def _invalid(self, phone: str, session_id: Optional[str], step: int, value: str) -> UssdResponse:
        log_security_event("ussd_invalid_option", phone, session_id=session_id, step=step, value=value[:20])
        return UssdResponse.end(INVALID_OPTION)

    def _service_menu(self) -> Dict[str, str]:
        return {str(index): name for index, name in enumerate(self.settings.USSD_SERVICE_MENU, start=1)}

    # ------------------------------------------------------------------
    # 1. Join queue: service -> confirm -> join
    # ------------------------------------------------------------------
    def _join_queue(self, phone: str, path: List[str], session_id: Optional[str]) -> UssdResponse:
        services = self._service_menu()

        if not path:
            options = "\n".join(f"{key}. {name}" for key, name in services.items())
            return UssdResponse.proceed(f"Select Service:\n{options}\n\nReply with 1-{len(services)}")

        service_type = services.get(path[0])
        if service_type is None:
            return self._invalid(phone, session_id, step=2, value=path[0])

        if len(path) == 1:
            return UssdResponse.proceed(
                f'You selected "{service_type}".\nDo you want to join this queue?\n1. Yes\n2. No'
            )

        if len(path) > 2:
            return self._invalid(phone, session_id, step=len(path) + 1, value=path[-1])

        confirmation = path[1]
        if confirmation == NO:
            return UssdResponse.end("Operation cancelled. Thank you.")
        if confirmation != YES:
            return self._invalid(phone, session_id, step=3, value=confirmation)

        try:
            result = self.engine.join_queue(phone, None, service_type)
        except ValidationError as exc:
            log_security_event("ussd_join_rejected", phone, session_id=session_id, reason=exc.message)
            return UssdResponse.end(INVALID_OPTION)

        headline = (
            f"You are already in the {service_type} queue."
            if result.already_in_queue
            else f"You joined the {service_type} queue!"
        )
        return UssdResponse.end(
            f"{headline}\n\n"
            f"Ticket: {result.ticket.ticket_number}\n"
            f"Position: {result.position}\n"
            f"Wait Time: ~{result.wait_time} min\n"
            f"People Ahead: {result.people_ahead}\n\n"
            "We'll notify you via SMS.",
            tuple(result.notifications),
        )

    # ------------------------------------------------------------------
    # 2. Check status: ticket number -> status
    # ------------------------------------------------------------------
    def _check_status(self, phone: str, path: List[str], session_id: Optional[str]) -> UssdResponse:
        if not path:
            return UssdResponse.proceed("Enter your Ticket Number:")

        if len(path) > 1:
            return self._invalid(phone, session_id, step=len(path) + 1, value=path[-1])

        ticket_number = path[0].strip()
        if not is_valid_ticket_number(ticket_number):
            log_security_event("ussd_malformed_ticket_number", phone, session_id=session_id, value=ticket_number[:20])
            return UssdResponse.end("Invalid ticket number. Use the format T000123.")

        try:
            status = self.engine.get_status(ticket_number)
        except NotFoundError:
            return UssdResponse.end("Ticket not found. Please check your number.")

        return UssdResponse.end(
            f"Ticket: {status.ticket.ticket_number}\n"
            f"Position: {status.position}\n"
            f"Now Serving: {status.now_serving or 'None'}\n"
            f"Wait: ~{status.wait_time} min"
        )

    # ------------------------------------------------------------------
    # 3. Airtime: amount -> recipient -> purchase
    # ------------------------------------------------------------------
    def _parse_amount(self, value: str) -> Optional[int]:
        if not value.isdigit():
            return None
        amount = int(value)
        if amount <= 0 or amount > self.settings.AIRTIME_MAX_AMOUNT:
            return None
        return amount

    def _buy_airtime(self, phone: str, path: List[str], session_id: Optional[str]) -> UssdResponse:
        if not path:
            return UssdResponse.proceed("Enter amount to buy:")

        amount = self._parse_amount(path[0])
        if amount is None:
            return self._invalid(phone, session_id, step=2, value=path[0])

        if len(path) == 1:
            return UssdResponse.proceed("Enter recipient number (e.g. +234...):")

        if len(path) > 2:
            return self._invalid(phone, session_id, step=len(path) + 1, value=path[-1])

        recipient = normalize_phone(path[1])
        if not is_valid_phone(recipient):
            return self._invalid(phone, session_id, step=3, value="<recipient>")

        result = self.purchases.buy_airtime(phone, amount, recipient)
        if not result.success:
            return UssdResponse.end(f"Transaction Failed.\nReason: {result.reason or 'Unknown error'}")

        currency = self.settings.CURRENCY_CODE
        receipt = (
            f"Airtime Purchase Successful\nAmount: {amount} {currency}\n"
            f"Recipient: {recipient}\nTransaction ID: {result.transaction_id}"
        )
        return UssdResponse.end(
            f"Airtime Purchase Successful!\nAmount: {amount} {currency}\n"
            f"Recipient: {recipient}\nTransaction ID: {result.transaction_id}",
            (Notification(phone, receipt),),
        )

    # ------------------------------------------------------------------
    # 4. Data: bundle -> confirm -> purchase
    # ------------------------------------------------------------------
    def _buy_data(self, phone: str, path: List[str], session_id: Optional[str]) -> UssdResponse:
        currency = self.settings.CURRENCY_CODE

        if not path:
            options = "\n".join(
                f"{key}. {bundle.size} - {currency} {bundle.amount}" for key, bundle in DATA_BUNDLES.items()
            )
            return UssdResponse.proceed(f"Select Data Bundle:\n{options}\n\nReply with 1-{len(DATA_BUNDLES)}")

        bundle = DATA_BUNDLES.get(path[0])
        if bundle is None:
            return self._invalid(phone, session_id, step=2, value=path[0])

        if len(path) == 1:
            return UssdResponse.proceed(
                f"Confirm purchase of {bundle.size} for {currency} {bundle.amount}?\n1. Yes\n2. No"
            )

        if len(path) > 2:
            return self._invalid(phone, session_id, step=len(path) + 1, value=path[-1])

        confirmation = path[1]
        if confirmation == NO:
            return UssdResponse.end("Transaction cancelled.")
        if confirmation != YES:
            return self._invalid(phone, session_id, step=3, value=confirmation)

        result = self.purchases.buy_data(phone, path[0])
        if not result.success:
            return UssdResponse.end(f"Transaction Failed.\nReason: {result.reason or 'Unknown error'}")

        receipt = (
            f"Data Purchase Successful!\nBundle: {result.bundle_size}\n"
            f"Amount: {currency} {bundle.amount}\nTransaction ID: {result.transaction_id}"
        )
        return UssdResponse.end(
            f"Data Purchase Successful!\nBundle: {result.bundle_size}\nTransaction ID: {result.transaction_id}",
            (Notification(phone, receipt),),
        )

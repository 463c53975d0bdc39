"""Step handler that sends an e-mail in the background.

The first call for a step starts delivery and makes the step wait; later
calls for the same step report success or the delivery error.
"""

from __future__ import annotations

import smtplib
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr

from vela_steps.registry import Providers, StepValue

PROVIDER_NAME = "email"
_WAIT_MESSAGE = "wait for the email"


@dataclass
class Sender:
    """SMTP account the mail is sent from."""

    address: str = ""
    password: str = ""
    host: str = ""
    port: int = 0
    alias: str = ""


@dataclass
class Content:
    """Subject and HTML body of the mail."""

    subject: str = ""
    body: str = ""


def _object(v: StepValue, what: str) -> Mapping:
    data = v.to_python()
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be an object, got {data!r}")
    return data


def _smtp_deliver(message: EmailMessage, sender: Sender) -> None:
    smtp = smtplib.SMTP_SSL if sender.port == 465 else smtplib.SMTP
    with smtp(sender.host, sender.port, timeout=10) as server:
        if smtp is smtplib.SMTP:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        if sender.password:
            server.login(sender.address, sender.password)
        server.send_message(message)


def _spawn_thread(job: Callable[[], None]) -> None:
    threading.Thread(target=job, daemon=True).start()


class EmailProvider:
    """Sends mail for steps, tracking each step's delivery state."""

    def __init__(
        self,
        deliver: Callable[[EmailMessage, Sender], None] | None = None,
        spawn: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self._deliver = deliver or _smtp_deliver
        self._spawn = spawn or _spawn_thread
        self._routines: dict[str, str] = {}
        self._lock = threading.Lock()

    def send(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Start or check the delivery for the step named by ``stepID``."""
        step_id = v.lookup("stepID").get_string()
        with self._lock:
            state = self._routines.get(step_id)
            if state is None:
                self._routines[step_id] = "initializing"
            elif state in ("initializing", "sending"):
                act.wait(_WAIT_MESSAGE)
                return
            else:
                del self._routines[step_id]
                if state == "success":
                    return
                raise RuntimeError(f"failed to send email: {state}")

        data = _object(v.lookup("from"), "from")
        port = data.get("port", 0)
        if isinstance(port, bool) or not isinstance(port, int):
            raise TypeError(f"from.port must be an integer, got {port!r}")
        sender = Sender(
            **{k: str(data.get(k, "")) for k in ("address", "password", "host", "alias")},
            port=port,
        )
        receivers = v.lookup("to").to_python()
        if not isinstance(receivers, list) or not all(isinstance(r, str) for r in receivers):
            raise TypeError(f"to must be a list of strings, got {receivers!r}")
        text = _object(v.lookup("content"), "content")
        content = Content(str(text.get("subject", "")), str(text.get("body", "")))

        message = EmailMessage()
        message["From"] = formataddr((sender.alias, sender.address)) if sender.alias else sender.address
        message["To"] = ", ".join(receivers)
        message["Subject"] = content.subject
        message.set_content(content.body, subtype="html")

        def job() -> None:
            with self._lock:
                if self._routines.get(step_id) != "initializing":
                    return
                self._routines[step_id] = "sending"
            try:
                self._deliver(message, sender)
                outcome = "success"
            except Exception as exc:  # the error text becomes the step's state
                outcome = str(exc)
            with self._lock:
                self._routines[step_id] = outcome

        self._spawn(job)
        act.wait(_WAIT_MESSAGE)


def install(providers: Providers) -> None:
    """Register the e-mail handler."""
    providers.register(PROVIDER_NAME, {"send": EmailProvider().send})
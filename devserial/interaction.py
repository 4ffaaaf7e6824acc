# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Scripted and interactive serial dialogues built on PromptTrigger.

Every dialogue owns the port for its duration: it opens the port, batches
device output, answers prompts with per-step deadlines and closes the port
when it resolves or fails.
"""

import asyncio
import functools
import getpass
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from .batcher import DEFAULT_BATCH_TIMEOUT, StreamBatcher
from .transport import ProtocolError, SerialPort, SerialTimeoutError, StreamClosedEarlyError
from .trigger import Handler, PromptTrigger

logger = logging.getLogger(__name__)

CLAIM_CODE_COMMAND = "C"
CLAIM_CODE_PROMPT = "Enter 63-digit claim code: "
CLAIM_CODE_CONFIRMATION = "Claim code set to: "
CLAIM_CODE_TIMEOUT = 2.0

WIFI_COMMAND = "w"
COMMAND_TIMEOUT = 5.0


class SerialDialog:
    """
    One prompt/response conversation over a serial port.

    Handlers registered with add_trigger() call resolve() or reject() to end
    the conversation. start_timeout() arms a deadline for the next prompt;
    any matched prompt clears it.
    """

    def __init__(self, port: SerialPort, batch_timeout: float = DEFAULT_BATCH_TIMEOUT):
        self.port = port
        self.batcher = StreamBatcher(batch_timeout)
        self.trigger = PromptTrigger(port, self.batcher, on_error=self.reject)
        self._done: Optional[asyncio.Future] = None
        self._deadline: Optional[asyncio.TimerHandle] = None

    def add_trigger(self, prompt: str, handler: Handler) -> None:
        def triggered(respond):
            self.reset_timeout()
            return handler(respond)

        self.trigger.add_trigger(prompt, triggered)

    def start_timeout(self, timeout: float) -> None:
        self.reset_timeout()
        self._deadline = asyncio.get_running_loop().call_later(
            timeout, self.reject, SerialTimeoutError("Serial timed out")
        )

    def reset_timeout(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def after(self, timeout: Optional[float]) -> Optional[Callable[[], None]]:
        """Return an after_sent callback that arms a deadline, if any."""
        if timeout is None:
            return None
        return functools.partial(self.start_timeout, timeout)

    def resolve(self, value: Any = None) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(value)

    def reject(self, exc: BaseException) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_exception(exc)

    async def run(
        self,
        command: Optional[str] = None,
        timeout: Optional[float] = None,
        quiet: bool = False,
    ) -> Any:
        """
        Open the port, send the command and wait until a handler resolves.

        Args:
            command: Text written once the port is open
            timeout: Deadline for the first prompt, armed after the command
            quiet: Do not log the answers sent to the device

        Raises:
            SerialTimeoutError: A prompt did not arrive in time
            StreamClosedEarlyError: The port closed during the dialogue
        """
        self._done = asyncio.get_running_loop().create_future()
        self.port.add_close_listener(self._on_close)
        try:
            await self.port.open()
            self.batcher.attach(self.port)
            self.trigger.start(quiet)
            if command:
                self.port.write(command.encode("utf-8"))
                await self.port.drain()
            if timeout is not None:
                self.start_timeout(timeout)
            return await self._done
        finally:
            self.reset_timeout()
            self.trigger.stop()
            self.batcher.detach()
            self.batcher.end()
            self.port.remove_close_listener(self._on_close)
            await self.port.close()

    def _on_close(self, exc: Optional[BaseException]) -> None:
        self.reject(StreamClosedEarlyError("Serial port closed early"))


Next = Callable[..., Awaitable[None]]
InteractionCallback = Callable[[SerialDialog, Next], Optional[Awaitable[None]]]


@dataclass
class Interaction:
    """A prompt to wait for, how long to wait, and what to do when it arrives."""
    prompt: str
    timeout: Optional[float]
    callback: InteractionCallback


async def run_interaction(
    port: SerialPort,
    command: Optional[str],
    interactions: Sequence[Interaction],
) -> Any:
    """
    Run a fixed sequence of prompts.

    The first prompt's deadline starts once the command is sent; every answer
    arms the deadline of the following prompt. The last prompt has none, so
    its callback must resolve the dialogue.
    """
    if not interactions:
        return None

    dialog = SerialDialog(port)
    for index, interaction in enumerate(interactions):
        following = interactions[index + 1].timeout if index + 1 < len(interactions) else None
        dialog.add_trigger(interaction.prompt, _step(dialog, interaction, following))
    return await dialog.run(command, interactions[0].timeout)


def _step(dialog: SerialDialog, interaction: Interaction, following: Optional[float]) -> Handler:
    def handler(respond):
        def next_(response: Optional[str] = None):
            return respond(response, dialog.after(following))

        return interaction.callback(dialog, next_)

    return handler


async def send_claim_code(port: SerialPort, claim_code: str) -> None:
    """Store a claim code on the device."""

    def enter_code(dialog, next_):
        next_(claim_code + "\n")

    def confirmed(dialog, next_):
        next_()
        dialog.resolve()

    await run_interaction(port, CLAIM_CODE_COMMAND, [
        Interaction(CLAIM_CODE_PROMPT, CLAIM_CODE_TIMEOUT, enter_code),
        Interaction(CLAIM_CODE_CONFIRMATION + claim_code, CLAIM_CODE_TIMEOUT, confirmed),
    ])


async def issue_command(port: SerialPort, command: str, timeout: float = COMMAND_TIMEOUT) -> str:
    """
    Send a command and return the first burst of output as text.

    Raises:
        SerialTimeoutError: Nothing came back within ``timeout`` seconds
    """
    batcher = StreamBatcher()
    response = asyncio.get_running_loop().create_future()

    def on_batch(chunk: bytes) -> None:
        if not response.done():
            response.set_result(chunk.decode("utf-8", errors="replace"))

    async def exchange() -> str:
        await port.open()
        batcher.attach(port)
        port.write(command.encode("utf-8"))
        await port.drain()
        return await response

    batcher.add_listener(on_batch)
    try:
        return await asyncio.wait_for(exchange(), timeout)
    except asyncio.TimeoutError:
        raise SerialTimeoutError("Serial timed out") from None
    finally:
        batcher.detach()
        batcher.end()
        await port.close()


# Device queries

IDENTIFY_COMMAND = "i"
MAC_COMMAND = "m"
SYSTEM_INFO_COMMAND = "s"
VERSION_COMMAND = "v"
CLAIM_CHECK_COMMAND = "c"
VERSION_TIMEOUT = 2.0
CLAIM_CHECK_TIMEOUT = 0.5

# Manufacturer prefixes used to repair MACs that manufacturing firmware
# reports with leading bytes missing.
KNOWN_MAC_PREFIXES = (("6c", "0b", "84"), ("44", "39", "c4"))

MODULE_FUNCTIONS = {
    "s": "System",
    "u": "User",
    "b": "Bootloader",
    "r": "Reserved",
    "m": "Monolithic",
}
MODULE_LOCATIONS = {"m": "main", "b": "backup", "f": "factory", "t": "temp"}


@dataclass
class DeviceIdentity:
    """What a device reports for the identify command."""
    id: str
    imei: Optional[str] = None
    iccid: Optional[str] = None


def parse_device_id(text: str) -> DeviceIdentity:
    """
    Extract the device id from identify output.

    Older firmware prints "Your device id is <id>"; cellular firmware prints
    the bare 24 digit id followed by IMEI and ICCID lines.

    Raises:
        ProtocolError: If no id is present
    """
    match = re.search(r"Your (core|device) id is\s+(\w+)", text)
    if match:
        return DeviceIdentity(match.group(2))

    match = re.search(r"\s+([a-fA-F0-9]{24})\s+", text)
    if match:
        imei = re.search(r"IMEI: (\w+)", text)
        iccid = re.search(r"ICCID: (\w+)", text)
        return DeviceIdentity(
            match.group(1),
            imei=imei.group(1) if imei else None,
            iccid=iccid.group(1) if iccid else None,
        )
    raise ProtocolError(f"Unable to find device id in response: {text!r}")


def parse_mac_address(text: str) -> str:
    """
    Extract a colon separated MAC address, repairing truncated ones.

    Raises:
        ProtocolError: If no MAC address is present
    """
    match = re.search(r"([0-9a-fA-F]{2}:){1,5}([0-9a-fA-F]{2})?", text)
    if not match:
        raise ProtocolError("Unable to find mac address in response")

    mac = match.group(0).lower()
    if len(mac) >= 17:
        return mac

    octets = mac.split(":")
    while len(octets) < 6:
        octets.insert(0, "00")
    for prefix in KNOWN_MAC_PREFIXES:
        if any(octets[i] == prefix[i] for i in range(len(prefix))):
            return ":".join(list(prefix) + octets[len(prefix):])
    return mac


def parse_firmware_version(text: str) -> Optional[str]:
    match = re.search(r"system firmware version:\s+([\w.]+)", text)
    return match.group(1) if match else None


def describe_modules(info: dict) -> List[str]:
    """Render the module list of a system information report, one line each."""
    lines = []
    for module in info.get("m", []):
        location = MODULE_LOCATIONS.get(module.get("l"), module.get("l"))
        function = MODULE_FUNCTIONS.get(module.get("f"))
        if function is None:
            lines.append(f"empty - {location} location, {module.get('s')} bytes max size")
            continue
        lines.append(
            f"{function} module #{module.get('n')} - version {module.get('v')}, "
            f"{location} location, {module.get('s')} bytes max size"
        )
    return lines


async def ask_device_id(port: SerialPort) -> DeviceIdentity:
    """Ask a device in listening mode for its id."""
    return parse_device_id(await issue_command(port, IDENTIFY_COMMAND))


async def ask_system_firmware_version(
    port: SerialPort, timeout: float = VERSION_TIMEOUT
) -> Optional[str]:
    return parse_firmware_version(await issue_command(port, VERSION_COMMAND, timeout))


async def get_mac_address(port: SerialPort) -> str:
    return parse_mac_address(await issue_command(port, MAC_COMMAND))


async def get_system_information(port: SerialPort) -> dict:
    """
    Return the device's module report.

    Raises:
        ProtocolError: If the reply is not JSON
    """
    reply = await issue_command(port, SYSTEM_INFO_COMMAND)
    try:
        return json.loads(reply)
    except ValueError as e:
        raise ProtocolError(f"Invalid system information: {e}") from e


async def supports_claim_code(port: SerialPort) -> bool:
    """Whether the firmware knows the claim code commands; silence means no."""
    try:
        reply = await issue_command(port, CLAIM_CHECK_COMMAND, CLAIM_CHECK_TIMEOUT)
    except SerialTimeoutError:
        return False
    return re.search(r"Device claimed: (\w+)", reply) is not None


# Wi-Fi configuration

SECURITY_PROMPT = "Security 0=unsecured, 1=WEP, 2=WPA, 3=WPA2:"
SECURITY_ENTERPRISE_PROMPT = (
    "Security 0=unsecured, 1=WEP, 2=WPA, 3=WPA2, 4=WPA Enterprise, 5=WPA2 Enterprise:"
)
CIPHER_PROMPT = "Security Cipher 1=AES, 2=TKIP, 3=AES+TKIP:"
EAP_PROMPT = "EAP Type 0=PEAP/MSCHAPv2, 1=EAP-TLS:"
WIFI_DONE_BANNERS = ("Spark <3 you!", "Particle <3 you!")

SECURITY_CHOICES = [("WPA2", 3), ("WPA", 2), ("WEP", 1), ("Unsecured", 0)]
ENTERPRISE_CHOICES = [("WPA Enterprise", 4), ("WPA2 Enterprise", 5)]
CIPHER_CHOICES = [("AES+TKIP", 3), ("TKIP", 2), ("AES", 1)]
EAP_CHOICES = [("PEAP/MSCHAPv2", 0), ("EAP-TLS", 1)]


@dataclass
class Question:
    """
    Something to ask the user.

    kind is one of "input", "password", "list", "editor" or "confirm".
    validate returns an error message, or None when the answer is fine.
    """
    kind: str
    name: str
    message: str
    choices: List[Tuple[str, Any]] = field(default_factory=list)
    validate: Optional[Callable[[Any], Optional[str]]] = None
    filter: Optional[Callable[[Any], Any]] = None
    default: Any = None


Ask = Callable[[Question], Awaitable[Any]]


@dataclass
class WifiOptions:
    """Answers supplied up front; anything left as None is asked for."""
    network: Optional[str] = None
    security: Optional[str] = None
    eap: Optional[str] = None
    username: Optional[str] = None
    outer_identity: Optional[str] = None
    client_certificate: Optional[str] = None
    private_key: Optional[str] = None
    root_ca: Optional[str] = None
    password: Optional[str] = None


def security_choice(security: str) -> Tuple[int, bool]:
    """Map a security description (e.g. "WPA2_AES") to (menu value, enterprise)."""
    if "WPA2" in security and "802.1x" in security:
        return 5, True
    if "WPA" in security and "802.1x" in security:
        return 4, True
    if "WPA2" in security:
        return 3, False
    if "WPA" in security:
        return 2, False
    if "WEP" in security:
        return 1, False
    if "NONE" in security:
        return 0, False
    return 3, False


def cipher_choice(security: str) -> int:
    if "AES" in security and "TKIP" in security:
        return 3
    if "TKIP" in security:
        return 2
    return 1


def eap_choice(eap: str) -> int:
    if "tls" in eap.lower() and "peap" not in eap.lower():
        return 1
    return 0


def _required(message: str) -> Callable[[Any], Optional[str]]:
    def validate(value):
        if not value or not str(value).strip():
            return message
        return None

    return validate


async def configure_wifi(
    port: SerialPort,
    options: Optional[WifiOptions] = None,
    ask: Optional[Ask] = None,
) -> None:
    """
    Walk the device through its Wi-Fi setup prompts.

    Values in ``options`` are sent as-is; missing ones are requested through
    ``ask`` (console prompts by default) and validated before anything is
    written to the device.
    """
    options = options or WifiOptions()
    ask = ask or console_ask
    dialog = SerialDialog(port)
    state = {"enterprise": False}

    def answer(respond, text: str, timeout: Optional[float]):
        return respond(text, dialog.after(timeout))

    async def on_ssid(respond):
        if options.network:
            await answer(respond, options.network + "\n", 5.0)
            return
        ssid = await ask(Question(
            "input", "ssid", "SSID",
            validate=_required("Please enter a valid SSID"),
            filter=str.strip,
        ))
        await answer(respond, ssid + "\n", 5.0)

    def on_security(enterprise_menu: bool):
        async def handler(respond):
            if options.security:
                value, enterprise = security_choice(options.security)
                state["enterprise"] = state["enterprise"] or enterprise
                await answer(respond, f"{value}\n", 10.0)
                return
            choices = list(SECURITY_CHOICES)
            if enterprise_menu:
                choices += ENTERPRISE_CHOICES
            value = await ask(Question("list", "security", "Security Type", choices=choices))
            if value > 3:
                state["enterprise"] = True
            await answer(respond, f"{value}\n", 10.0)

        return handler

    async def on_cipher(respond):
        if options.security is not None:
            await answer(respond, f"{cipher_choice(options.security)}\n", 5.0)
            return
        value = await ask(Question("list", "cipher", "Cipher Type", choices=CIPHER_CHOICES))
        await answer(respond, f"{value}\n", 5.0)

    async def on_eap(respond):
        state["enterprise"] = True
        if options.eap is not None:
            await answer(respond, f"{eap_choice(options.eap)}\n", 5.0)
            return
        value = await ask(Question("list", "eap", "EAP Type", choices=EAP_CHOICES))
        await answer(respond, f"{value}\n", 5.0)

    def on_text(attribute: str, message: str, required: bool, pem: bool = False):
        suffix = "\n\n" if pem else "\n"

        async def handler(respond):
            value = getattr(options, attribute)
            if not value:
                value = await ask(Question(
                    "editor" if pem else "input",
                    attribute,
                    message,
                    validate=_required(f"Please enter {message}") if required else None,
                ))
            await answer(respond, (value or "").strip() + suffix, 15.0)

        return handler

    async def on_root_ca(respond):
        value = options.root_ca
        if not value:
            provide = await ask(Question(
                "confirm", "provide_root_ca",
                "Would you like to provide CA certificate?", default=True,
            ))
            value = ""
            if provide:
                value = await ask(Question(
                    "editor", "root_ca", "CA certificate in PEM format",
                    validate=_required("Please enter a CA certificate"),
                ))
        await answer(respond, value.strip() + "\n\n", 15.0)

    async def on_password(respond):
        value = options.password
        if not value:
            value = await ask(Question(
                "password", "password",
                "Password" if state["enterprise"] else "Wi-Fi Password",
                validate=_required("Please enter a password"),
            ))
        await answer(respond, value + "\n", 15.0)

    def on_done(respond):
        dialog.resolve()

    dialog.add_trigger("SSID:", on_ssid)
    dialog.add_trigger(SECURITY_PROMPT, on_security(False))
    dialog.add_trigger(SECURITY_ENTERPRISE_PROMPT, on_security(True))
    dialog.add_trigger(CIPHER_PROMPT, on_cipher)
    dialog.add_trigger(EAP_PROMPT, on_eap)
    dialog.add_trigger("Username:", on_text("username", "Username", True))
    dialog.add_trigger("Outer identity (optional):", on_text(
        "outer_identity", "Outer identity (optional)", False))
    dialog.add_trigger("Client certificate in PEM format:", on_text(
        "client_certificate", "Client certificate in PEM format", True, pem=True))
    dialog.add_trigger("Private key in PEM format:", on_text(
        "private_key", "Private key in PEM format", True, pem=True))
    dialog.add_trigger("Root CA in PEM format (optional):", on_root_ca)
    dialog.add_trigger("Password:", on_password)
    for banner in WIFI_DONE_BANNERS:
        dialog.add_trigger(banner, on_done)

    logger.info("Attempting to configure Wi-Fi on %s", port.port)
    await dialog.run(WIFI_COMMAND, quiet=True)


async def console_ask(question: Question) -> Any:
    """Ask on the terminal until the answer validates."""
    loop = asyncio.get_running_loop()
    while True:
        answer = await loop.run_in_executor(None, _read_answer, question)
        if answer is None:
            print("Please pick one of the listed options")
            continue
        if question.filter is not None:
            answer = question.filter(answer)
        error = question.validate(answer) if question.validate else None
        if error is None:
            return answer
        print(error)


def _read_answer(question: Question) -> Any:
    if question.kind == "password":
        return getpass.getpass(f"{question.message}: ")

    if question.kind == "confirm":
        default = "Y/n" if question.default else "y/N"
        reply = input(f"{question.message} [{default}] ").strip().lower()
        if not reply:
            return bool(question.default)
        return reply.startswith("y")

    if question.kind == "list":
        print(f"{question.message}:")
        for index, (name, _) in enumerate(question.choices, 1):
            print(f"  {index}) {name}")
        reply = input("> ").strip()
        if not reply.isdigit() or not 1 <= int(reply) <= len(question.choices):
            return None
        return question.choices[int(reply) - 1][1]

    if question.kind == "editor":
        print(f"{question.message} (finish with an empty line):")
        lines = []
        while True:
            line = input()
            if not line:
                break
            lines.append(line)
        return "\n".join(lines)

    return input(f"{question.message}: ")

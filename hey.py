#!/usr/bin/env python3
"""
hey - a minimalist terminal client for the Gemini API

Sends a prompt (plus any piped context) to Gemini and prints the reply, or
runs a looping chat session that keeps the conversation in memory.

Usage:
  hey [options] [prompt...]
  cat notes.txt | hey [options] [prompt appended after the piped context]

Commands during a chat session:
  /q, /quit          - Exit
  /s, /save [name]   - Save the transcript to the chats directory
"""
import os, sys, json, logging, warnings, argparse, io, shutil, readline, atexit
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import requests
from rich.console import Console
from rich.markdown import Markdown

# ================= CONFIG =================
DEFAULT_MODEL = "gemini-2.5-flash-preview-05-20"
API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
REQUEST_TIMEOUT = float(os.getenv("HEY_TIMEOUT", "120"))

HEY_DIR = Path(os.getenv("HEY_HOME", Path.home() / ".hey"))
CHATS_DIR = HEY_DIR / "chats"
HISTORY_FILE = HEY_DIR / "history"

ASSISTANT_NAME = "Gemini"
USER = "user"
MODEL = "model"

QUIT_TOKENS = ("/q", "/quit")
SAVE_TOKENS = ("/s", "/save")

logger = logging.getLogger("hey")

# ================= COLORS =================
RESET="\033[0m"; RED="\033[0;31m"; GREEN="\033[0;32m"; YELLOW="\033[0;33m"
CYAN="\033[0;36m"; BRIGHT_GREEN="\033[0;92m"; BRIGHT_BLUE="\033[0;94m"

# ================= ERRORS =================
class HeyError(Exception):
    """Base class for failures of a single exchange."""


class EmptyRequestError(HeyError):
    pass


class EncodingError(HeyError):
    pass


class TransportError(HeyError):
    """A dispatch failed; ``partial_text`` holds whatever was streamed first."""

    def __init__(self, message, partial_text=""):
        super().__init__(message)
        self.partial_text = partial_text


class NetworkError(TransportError):
    pass


class ApiError(TransportError):
    def __init__(self, detail, partial_text=""):
        super().__init__(f"API returned an error: {detail}", partial_text)
        self.detail = detail


class EmptyResponseWarning(UserWarning):
    pass

# ================= SESSION CONFIG =================
@dataclass(frozen=True)
class SessionConfig:
    api_key: str
    model: str = DEFAULT_MODEL
    stream: bool = False
    chat: bool = False
    markdown: bool = False
    context: str = ""
    prompt: str = ""
    chats_dir: Path = CHATS_DIR
    user_name: str = "user"
    timeout: float = REQUEST_TIMEOUT
    api_base: str = API_BASE


def build_parser():
    parser = argparse.ArgumentParser(
        prog="hey",
        description="A minimalist terminal client for Google's Gemini API.",
        epilog=(
            "Environment: GEMINI_API_KEY (required), GEMINI_MODEL (default model, "
            f"falls back to {DEFAULT_MODEL}), HEY_HOME (default ~/.hey)."
        ),
    )
    parser.add_argument("prompt", nargs="*", help="the prompt text")
    parser.add_argument("--chat", action="store_true",
                        help="looping chat session; /q quits, /s [name] saves the transcript")
    parser.add_argument("--stream", action="store_true", help="use the streaming endpoint")
    parser.add_argument("--markdown", action="store_true", help="render replies as terminal markdown")
    parser.add_argument("--model", help="override the GEMINI_MODEL / default model")
    parser.add_argument("--debug", action="store_true", help="print payloads and raw responses")
    return parser


def resolve_model(override, environ):
    if override:
        logger.debug("Using model from --model option: %s", override)
        return override
    if environ.get("GEMINI_MODEL"):
        logger.debug("Using model from GEMINI_MODEL env var: %s", environ["GEMINI_MODEL"])
        return environ["GEMINI_MODEL"]
    logger.debug("Using default model: %s", DEFAULT_MODEL)
    return DEFAULT_MODEL


def build_config(args, environ, context=""):
    """Freeze parsed arguments, environment and piped context into a SessionConfig."""
    return SessionConfig(
        api_key=environ.get("GEMINI_API_KEY", ""),
        model=resolve_model(args.model, environ),
        stream=args.stream,
        chat=args.chat,
        markdown=args.markdown,
        context=context,
        prompt=" ".join(args.prompt),
        chats_dir=Path(environ["HEY_HOME"]) / "chats" if environ.get("HEY_HOME") else CHATS_DIR,
        user_name=environ.get("USER") or "user",
    )

# ================= PAYLOAD =================
@dataclass(frozen=True)
class Turn:
    role: str
    text: str

    def to_wire(self):
        return {"role": self.role, "parts": [{"text": self.text}]}


def combine(context, prompt):
    blocks = []
    if context:
        blocks.append(f"<context>{context}</context>")
    if prompt:
        blocks.append(f"<prompt>{prompt}</prompt>")
    return "\n".join(blocks)


def build_single_turn(context, prompt):
    return Turn(USER, combine(context, prompt))


def build_request_payload(history, new_turn, chat):
    """Project the history (chat mode only) plus the new user turn into a request body."""
    if not new_turn.text and not len(history):
        raise EmptyRequestError("Nothing to send: prompt, context and history are all empty.")
    prior = history.to_wire() if chat else []
    return {"contents": prior + [new_turn.to_wire()]}


def encode_payload(payload):
    try:
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Could not serialize request payload: {e}") from e

# ================= HISTORY =================
class History:
    """Ordered turns of one chat session. Only appended to or popped from the tail."""

    def __init__(self):
        self._turns = []

    def append(self, turn):
        self._turns.append(turn)

    def pop_last_if_role(self, role):
        if self._turns and self._turns[-1].role == role:
            return self._turns.pop()
        return None

    def to_list(self):
        return list(self._turns)

    def to_wire(self):
        return [t.to_wire() for t in self._turns]

    def __len__(self):
        return len(self._turns)

    def __iter__(self):
        return iter(list(self._turns))

# ================= TRANSPORT =================
@dataclass
class Frame:
    kind: str  # data | ignorable
    data: str = ""


@dataclass
class StreamChunk:
    text: str = ""
    error: str | None = None


def decode_frames(lines):
    """Turn raw SSE lines into typed frames. Blank separators are dropped."""
    for line in lines:
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                raise NetworkError(f"Stream frame was not valid UTF-8: {e}") from e
        if not line:
            continue
        if line.startswith("data:"):
            yield Frame("data", line[5:].lstrip(" "))
        else:
            yield Frame("ignorable", line)


def extract_text(body):
    """First candidate's text, or None when the path is missing."""
    try:
        text = body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) else None


def format_error(error):
    if isinstance(error, dict):
        parts = [str(error[k]) for k in ("code", "status", "message") if error.get(k)]
        if parts:
            return " ".join(parts)
    return json.dumps(error)


def parse_chunk(data):
    if not isinstance(data, dict):
        return StreamChunk()
    error = format_error(data["error"]) if "error" in data else None
    return StreamChunk(text=extract_text(data) or "", error=error)


class GeminiTransport:
    def __init__(self, api_key, model, base_url=API_BASE, timeout=REQUEST_TIMEOUT):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, method, payload, stream=False, params=None):
        url = f"{self.base_url}/models/{self.model}:{method}"
        body = encode_payload(payload)
        logger.debug("%s API URL: %s", "Streaming" if stream else "Standard", url)
        logger.debug("Request payload:\n%s", json.dumps(payload, indent=2, ensure_ascii=False))
        try:
            return requests.post(url,
                headers={"Content-Type": "application/json"},
                params={"key": self.api_key, **(params or {})},
                data=body,
                stream=stream,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Request timed out after {self.timeout}s.") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Could not connect to {self.base_url}.") from e
        except requests.RequestException as e:
            raise NetworkError(f"Request failed: {e}") from e

    def send_sync(self, payload):
        response = self._post("generateContent", payload)
        logger.debug("Raw API response (HTTP %s):\n%s", response.status_code, response.text)
        try:
            body = response.json()
        except ValueError:
            raise ApiError(f"HTTP {response.status_code}: response was not JSON")
        if isinstance(body, dict) and "error" in body:
            raise ApiError(format_error(body["error"]))
        if not response.ok:
            raise ApiError(f"HTTP {response.status_code}")

        text = extract_text(body)
        if text is None:
            warnings.warn("Response contained no text; path candidates[0].content.parts[0].text is missing.",
                          EmptyResponseWarning, stacklevel=2)
            return ""
        return text

    def iter_chunks(self, response):
        """Lazily decode a streaming response into StreamChunks, in arrival order."""
        for frame in decode_frames(response.iter_lines()):
            if frame.kind != "data":
                logger.debug("Stream non-data line: %s", frame.data)
                continue
            logger.debug("Raw stream chunk: %s", frame.data)
            try:
                data = json.loads(frame.data)
            except json.JSONDecodeError as e:
                raise NetworkError(f"Stream ended inside a frame: {e}") from e
            yield parse_chunk(data)

    def send_stream(self, payload, on_fragment=None):
        response = self._post("streamGenerateContent", payload, stream=True, params={"alt": "sse"})
        with response:
            if not response.ok:
                try:
                    body = response.json()
                except ValueError:
                    body = {}
                except requests.RequestException as e:
                    raise NetworkError(f"Stream interrupted while reading error body: {e}") from e
                error = body.get("error") if isinstance(body, dict) else None
                raise ApiError(format_error(error) if error else f"HTTP {response.status_code}")

            full_text = ""
            error = None
            received = False
            try:
                for chunk in self.iter_chunks(response):
                    received = True
                    if chunk.text:
                        full_text += chunk.text
                        if on_fragment is not None:
                            try:
                                on_fragment(chunk.text)
                            except OSError as e:
                                logger.debug("Live output unavailable, echo disabled: %s", e)
                                on_fragment = None
                    if chunk.error and error is None:
                        error = chunk.error
            except NetworkError as e:
                e.partial_text = full_text
                raise
            except requests.RequestException as e:
                raise NetworkError(f"Stream interrupted: {e}", partial_text=full_text) from e

        if error is not None:
            raise ApiError(error, partial_text=full_text)
        if not received:
            logger.debug("Stream ended without any data frames.")
        return full_text

# ================= RENDERING =================
def render_markdown(text, width=None):
    """Format markdown for the terminal, returning the ANSI text."""
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=True,
                      width=width or shutil.get_terminal_size().columns)
    console.print(Markdown(text))
    return buf.getvalue()


def stream_writer(stream):
    def write(fragment):
        stream.write(f"{GREEN}{fragment}{RESET}")
        stream.flush()
    return write


def open_live_sink():
    try:
        tty = open("/dev/tty", "w", encoding="utf-8")
    except OSError:
        logger.debug("/dev/tty not writable, live stream chunks will not be printed.")
        return None
    atexit.register(tty.close)
    return stream_writer(tty)

# ================= TRANSCRIPT =================
def format_transcript(context, history, user_name, model):
    out = ""
    if context:
        out += f"<context>{context}</context>\n"
    for turn in history:
        if turn.role == USER:
            out += f"<user {user_name}>{turn.text}</user>\n"
        elif turn.role == MODEL:
            out += f"<model {model}>{turn.text}</model>\n"
    return out


def resolve_save_path(name, last_path, chats_dir, now=None):
    timestamp = (now or datetime.now()).strftime("%y%m%d-%H%M")
    if name:
        return Path(chats_dir) / f"{timestamp}-{Path(name).name}.chat"
    if last_path:
        return Path(last_path)
    return Path(chats_dir) / f"{timestamp}.chat"


def save_transcript(path, context, history, user_name, model):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_transcript(context, history, user_name, model), encoding="utf-8")
    return path

# ================= SESSION =================
@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class Save:
    name: str | None = None


@dataclass(frozen=True)
class Prompt:
    text: str


def parse_command(line):
    words = line.split()
    if words and words[0] in QUIT_TOKENS:
        return Quit()
    if words and words[0] in SAVE_TOKENS:
        return Save(words[1] if len(words) > 1 else None)
    return Prompt(line)


def dispatch(config, transport, payload, on_fragment=None):
    if config.stream:
        return transport.send_stream(payload, on_fragment=on_fragment)
    return transport.send_sync(payload)


def report_error(err, e):
    err.write(f"{RED}Error: {e}{RESET}\n")
    err.flush()


class ChatSession:
    """Interactive loop: read, dispatch, record, repeat until /q or end of input."""

    def __init__(self, config, transport, read_line=input, out=None, err=None,
                 live_sink=None, clock=datetime.now):
        self.config = config
        self.transport = transport
        self.read_line = read_line
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.live_sink = live_sink or stream_writer(self.out)
        self.clock = clock
        self.history = History()
        self.last_save_path = None
        self.closed = False
        initial = combine(config.context, config.prompt)
        self._initial_input = initial or None

    def _next_input(self):
        if self._initial_input is not None:
            text, self._initial_input = self._initial_input, None
            logger.debug("Using initial prompt/context for the first API call (not echoed).")
            return Prompt(text)
        line = self.read_line(f"{BRIGHT_BLUE}You: {RESET}")
        return parse_command(line)

    def save(self, name=None):
        path = resolve_save_path(name, self.last_save_path, self.config.chats_dir, self.clock())
        logger.debug("Attempting to save chat to %s", path)
        try:
            save_transcript(path, self.config.context, self.history,
                            self.config.user_name, self.config.model)
        except OSError as e:
            report_error(self.err, f"Failed to save chat to {path}: {e}")
            return None
        self.last_save_path = path
        self.out.write(f"{CYAN}Chat saved to {path}{RESET}\n")
        return path

    def exchange(self, text):
        """One dispatch cycle. Returns True when the history advanced by a full pair."""
        turn = Turn(USER, text)
        try:
            payload = build_request_payload(self.history, turn, chat=True)
            encode_payload(payload)
        except HeyError as e:
            report_error(self.err, f"Error building payload for chat: {e}")
            return False

        self.history.append(turn)
        self.out.write(f"{BRIGHT_GREEN}{ASSISTANT_NAME}: {RESET}")
        self.out.flush()

        echo = None if self.config.markdown else self.live_sink
        try:
            reply = dispatch(self.config, self.transport, payload, on_fragment=echo)
        except HeyError as e:
            self.out.write("\n")
            self.history.pop_last_if_role(USER)
            logger.debug("API request in chat failed, rolled back user turn (history: %d)", len(self.history))
            report_error(self.err, e)
            return False
        except KeyboardInterrupt:
            self.history.pop_last_if_role(USER)
            self.out.write(f"\n{YELLOW}[Generation aborted by user]{RESET}\n")
            return False

        self.history.append(Turn(MODEL, reply))
        self.render(reply)
        return True

    def render(self, reply):
        if self.config.markdown and reply:
            self.out.write("\n" + render_markdown(reply))
        elif not self.config.stream:
            self.out.write(f"{GREEN}{reply}{RESET}")
        if not reply.endswith("\n"):
            self.out.write("\n")
        self.out.flush()

    def run(self):
        self.out.write(f"{CYAN}Starting chat session with {self.config.model}. Type '/q' to quit, "
                       f"'/s [filename]' to save to {self.config.chats_dir}/{RESET}\n")
        while not self.closed:
            try:
                command = self._next_input()
            except (EOFError, KeyboardInterrupt):
                self.out.write("\n")
                command = Quit()

            if isinstance(command, Quit):
                self.out.write(f"{CYAN}Exiting chat.{RESET}\n")
                self.closed = True
                continue
            if isinstance(command, Save):
                self.save(command.name)
                continue

            if not command.text and not len(self.history):
                logger.debug("Chat: empty input on first turn, skipping API call.")
                continue
            self.exchange(command.text)
        return 0


def run_single_shot(config, transport, out=None, err=None, live_sink=None):
    """Send one request built from context + prompt and print the reply. Returns the exit status."""
    out = out or sys.stdout
    err = err or sys.stderr
    try:
        payload = build_request_payload(History(), build_single_turn(config.context, config.prompt), chat=False)
        text = dispatch(config, transport, payload, on_fragment=live_sink)
    except HeyError as e:
        report_error(err, e)
        return 1

    if config.markdown:
        out.write(render_markdown(text))
    elif out.isatty():
        if not config.stream:
            out.write(f"{GREEN}{text}{RESET}\n")
        elif not text.endswith("\n"):
            out.write("\n")
    else:
        out.write(text + "\n")
    out.flush()
    return 0

# ================= MAIN =================
class ColorFormatter(logging.Formatter):
    COLORS = {logging.DEBUG: YELLOW, logging.WARNING: YELLOW, logging.ERROR: RED}

    def format(self, record):
        color = self.COLORS.get(record.levelno, "")
        return f"{color}{record.levelname}: {record.getMessage()}{RESET}"


def setup_logging(debug=False):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter())
    for name in ("hey", "py.warnings"):
        log = logging.getLogger(name)
        log.handlers[:] = [handler]
        log.setLevel(logging.DEBUG if debug else logging.WARNING)
        log.propagate = False
    logging.captureWarnings(True)
    warnings.simplefilter("always", EmptyResponseWarning)


def setup_readline():
    HEY_DIR.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(HISTORY_FILE)
    except OSError:
        pass
    atexit.register(readline.write_history_file, HISTORY_FILE)


def read_piped_input(stdin):
    if stdin.isatty():
        return ""
    logger.debug("Read piped input.")
    return stdin.read().rstrip("\n")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)
    setup_logging(args.debug)

    environ = dict(os.environ)
    if not environ.get("GEMINI_API_KEY"):
        report_error(sys.stderr, "GEMINI_API_KEY environment variable is not set.")
        parser.print_help(sys.stderr)
        return 1

    config = build_config(args, environ, context=read_piped_input(sys.stdin))
    transport = GeminiTransport(config.api_key, config.model, config.api_base, config.timeout)

    if not config.chat:
        return run_single_shot(config, transport, live_sink=open_live_sink())

    if not sys.stdin.isatty():
        try:
            sys.stdin = open("/dev/tty", encoding="utf-8")
        except OSError:
            report_error(sys.stderr, "Chat mode needs a terminal to read input from.")
            return 1
    try:
        setup_readline()
    except OSError as e:
        logger.debug("Line editing unavailable: %s", e)
    return ChatSession(config, transport).run()


if __name__ == "__main__":
    sys.exit(main())

# ============================================================
# ORION CHAT API
# FastAPI + SQLite + streaming LLM relay with auth & history
# ============================================================

import os
import re
import json
import time
import uuid
import sqlite3
import hashlib
import logging
import threading
from io import BytesIO
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Callable, Iterator

import requests
import bcrypt
from dotenv import load_dotenv
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from fastapi import FastAPI, HTTPException, UploadFile, File, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool, iterate_in_threadpool
from ddgs import DDGS
from pypdf import PdfReader

load_dotenv()

# ---------- Configuration ----------
APP_TITLE = "Orion Chat API"
SQLITE_PATH = os.getenv("SQLITE_PATH", "data/orion.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Auth configuration
SESSION_SECRET = os.getenv(
    "SESSION_SECRET",
    hashlib.sha256(f"orion-dev-{os.getenv('HOSTNAME', 'local')}".encode()).hexdigest(),
)
TOKEN_MAX_AGE = int(os.getenv("TOKEN_MAX_AGE", str(7 * 86400)))  # 7 days
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))
MIN_PASSWORD_CHARS = 6
MAX_PASSWORD_BYTES = 72  # bcrypt input limit

# Completion provider
COMPLETION_PROVIDER = os.getenv("COMPLETION_PROVIDER", "openai").lower().strip()
CHAT_BASE_URL = os.getenv("CHAT_BASE_URL", "https://api.groq.com/openai/v1")
CHAT_API_KEY = os.getenv("CHAT_API_KEY", os.getenv("GROQ_API_KEY", ""))
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama-3.3-70b-versatile")
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "2048"))
CHAT_TIMEOUT = int(os.getenv("CHAT_TIMEOUT", "600"))
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", "You are a helpful AI assistant.")

# Turn composition
HISTORY_TURNS = int(os.getenv("HISTORY_TURNS", "5"))
TITLE_MAX_CHARS = 40
FILE_EXCERPT_CHARS = int(os.getenv("FILE_EXCERPT_CHARS", "1000"))

# Web search
WEB_SEARCH_ENABLED = os.getenv("WEB_SEARCH_ENABLED", "true").lower() == "true"
WEB_SEARCH_MAX = int(os.getenv("WEB_SEARCH_MAX", "5"))
WEB_SNIPPET_CHARS = 500
TAVILY_API_KEY = os.getenv("TAVILY_API_KEY", "")
TAVILY_URL = os.getenv("TAVILY_URL", "https://api.tavily.com/search")

# Uploads
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10MB
MAX_EXTRACT_CHARS = int(os.getenv("MAX_EXTRACT_CHARS", "50000"))
PDF_MAX_PAGES = int(os.getenv("PDF_MAX_PAGES", "100"))

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
RATE_LIMIT_MESSAGE = "Too many requests, please slow down."

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://127.0.0.1:8000,http://localhost:8000,http://127.0.0.1:3000,http://localhost:3000",
    ).split(",")
    if o.strip()
]

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("orion")

serializer = URLSafeTimedSerializer(SESSION_SECRET)


# ---------- Database ----------
def db() -> sqlite3.Connection:
    directory = os.path.dirname(SQLITE_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(SQLITE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    conn.execute("""
      CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        created_at REAL NOT NULL
      )
    """)

    conn.execute("""
      CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        title TEXT NOT NULL DEFAULT 'New Chat',
        created_at REAL NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id)
      )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_conversations_user "
        "ON conversations(user_id, created_at DESC)"
    )

    conn.execute("""
      CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        convo_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        ts REAL NOT NULL,
        FOREIGN KEY (convo_id) REFERENCES conversations(id) ON DELETE CASCADE
      )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_convo_ts ON messages(convo_id, ts)"
    )
    return conn


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def create_user(email: str, password_hash: str) -> int:
    """Insert a user; raises sqlite3.IntegrityError when the email is taken."""
    conn = db()
    try:
        with conn:
            cur = conn.execute(
                "INSERT INTO users (email, password_hash, created_at) VALUES (?, ?, ?)",
                (email, password_hash, time.time()),
            )
        return cur.lastrowid
    finally:
        conn.close()


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    conn = db()
    try:
        row = conn.execute(
            "SELECT id, email, password_hash FROM users WHERE email=?", (email,)
        ).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    conn = db()
    try:
        row = conn.execute("SELECT id, email FROM users WHERE id=?", (user_id,)).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def create_conversation(user_id: int, title: str) -> Dict[str, Any]:
    conv = {"id": str(uuid.uuid4()), "user_id": user_id, "title": title, "created_at": time.time()}
    conn = db()
    try:
        with conn:
            conn.execute(
                "INSERT INTO conversations (id, user_id, title, created_at) VALUES (?, ?, ?, ?)",
                (conv["id"], user_id, title, conv["created_at"]),
            )
    finally:
        conn.close()
    logger.info("Conversation created: id=%s user_id=%s", conv["id"], user_id)
    return conv


def get_conversation(conv_id: str) -> Optional[Dict[str, Any]]:
    conn = db()
    try:
        row = conn.execute(
            "SELECT id, user_id, title, created_at FROM conversations WHERE id=?", (conv_id,)
        ).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def list_conversations(user_id: int) -> List[Dict[str, Any]]:
    conn = db()
    try:
        rows = conn.execute(
            "SELECT c.id, c.title, c.created_at, COUNT(m.id) AS message_count "
            "FROM conversations c LEFT JOIN messages m ON m.convo_id = c.id "
            "WHERE c.user_id=? GROUP BY c.id "
            "ORDER BY c.created_at DESC, c.rowid DESC",
            (user_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def add_message(convo_id: str, role: str, content: str) -> int:
    conn = db()
    try:
        with conn:
            cur = conn.execute(
                "INSERT INTO messages (convo_id, role, content, ts) VALUES (?, ?, ?, ?)",
                (convo_id, role, content, time.time()),
            )
        return cur.lastrowid
    finally:
        conn.close()


def get_messages(convo_id: str) -> List[Dict[str, Any]]:
    conn = db()
    try:
        rows = conn.execute(
            "SELECT id, role, content, ts FROM messages WHERE convo_id=? ORDER BY ts ASC, id ASC",
            (convo_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def delete_conversation(conv_id: str) -> None:
    conn = db()
    try:
        with conn:
            conn.execute("DELETE FROM messages WHERE convo_id=?", (conv_id,))
            conn.execute("DELETE FROM conversations WHERE id=?", (conv_id,))
    finally:
        conn.close()
    logger.info("Conversation deleted: id=%s", conv_id)


# ---------- Authentication ----------
def create_token(user_id: int, email: str) -> str:
    return serializer.dumps({"userId": user_id, "email": email})


def verify_token(token: str) -> Optional[Dict]:
    try:
        return serializer.loads(token, max_age=TOKEN_MAX_AGE)
    except (BadSignature, SignatureExpired):
        return None


def get_current_user(request: Request) -> Dict:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    user = verify_token(token)
    if not user:
        raise HTTPException(status_code=403, detail="Invalid or expired token.")
    return user


# ---------- Rate Limiting ----------
class RateLimiter:
    """Fixed one-minute window counter per client key."""

    def __init__(self, max_requests_per_minute: int = RATE_LIMIT_PER_MINUTE, clock=time.time):
        self.max_requests = max_requests_per_minute
        self.clock = clock
        # counts for the current minute only
        self._window: Optional[int] = None
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def check_and_increment(self, key: str) -> bool:
        """Return True if the request is allowed, False once the window is exhausted."""
        minute = int(self.clock() // 60)
        with self._lock:
            if self._window != minute:
                self._counters.clear()
                self._window = minute
            count = self._counters.get(key, 0)
            if count >= self.max_requests:
                return False
            self._counters[key] = count + 1
            return True

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._window = None


class RateLimitMiddleware:
    """ASGI middleware applying a RateLimiter to every path under `prefix`."""

    def __init__(self, app, limiter: RateLimiter, prefix: str = "/api/"):
        self.app = app
        self.limiter = limiter
        self.prefix = prefix

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope["path"].startswith(self.prefix):
            client = scope.get("client")
            key = client[0] if client else "unknown"
            if not self.limiter.check_and_increment(key):
                logger.warning("Rate limit exceeded: client=%s path=%s", key, scope["path"])
                response = JSONResponse({"detail": RATE_LIMIT_MESSAGE}, status_code=429)
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE)


# ---------- Completion Providers ----------
class CompletionError(RuntimeError):
    """Upstream completion API refused or failed a request."""


class OpenAICompatibleProvider:
    """Streams from an OpenAI-compatible /chat/completions endpoint (Groq by default)."""

    name = "openai"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        max_tokens: int = CHAT_MAX_TOKENS,
        timeout: int = CHAT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        """Yield content deltas in arrival order."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        with requests.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=headers,
            timeout=self.timeout,
            stream=True,
        ) as resp:
            if resp.status_code != 200:
                raise CompletionError(f"Completion API error {resp.status_code}: {resp.text[:200]}")
            resp.encoding = "utf-8"
            for line in resp.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                text = (choices[0].get("delta") or {}).get("content") or ""
                if text:
                    yield text


class OllamaProvider:
    """Streams from Ollama's /api/chat (newline-delimited JSON)."""

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: int = CHAT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        payload = {"model": self.model, "messages": messages, "stream": True}
        with requests.post(
            f"{self.base_url}/api/chat", json=payload, timeout=self.timeout, stream=True
        ) as resp:
            if resp.status_code != 200:
                raise CompletionError(f"Ollama chat error {resp.status_code}: {resp.text[:200]}")
            resp.encoding = "utf-8"
            for line in resp.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                text = (data.get("message") or {}).get("content") or ""
                if text:
                    yield text
                if data.get("done"):
                    break


def make_provider():
    if COMPLETION_PROVIDER == "ollama":
        return OllamaProvider(OLLAMA_BASE_URL, OLLAMA_MODEL)
    return OpenAICompatibleProvider(CHAT_BASE_URL, CHAT_API_KEY, CHAT_MODEL)


# ---------- Real-time Classifier ----------
REALTIME_KEYWORDS = (
    "weather", "temperature", "forecast", "climate",
    "today", "now", "current", "latest", "recent",
    "news", "breaking", "happening",
    "price", "stock", "crypto", "bitcoin", "ethereum",
    "score", "game", "match", "sports",
    "what is", "when is", "where is",
    "how is", "did", "has", "will",
    "twitter", "instagram", "facebook", "trending",
    "covid", "pandemic", "virus",
)


class KeywordClassifier:
    """Flags messages that probably need live information (plain substring match)."""

    def __init__(self, keywords=REALTIME_KEYWORDS):
        self.keywords = tuple(k.lower() for k in keywords)

    def needs_search(self, message: str) -> bool:
        lowered = message.lower()
        return any(k in lowered for k in self.keywords)


# ---------- Web Search ----------
def empty_search() -> Dict[str, Any]:
    return {"summary": None, "results": []}


def tavily_search(query: str, max_results: int) -> Dict[str, Any]:
    resp = requests.post(
        TAVILY_URL,
        json={
            "api_key": TAVILY_API_KEY,
            "query": query,
            "search_depth": "basic",
            "include_answer": True,
            "max_results": max_results,
        },
        timeout=30,
    )
    resp.raise_for_status()
    data = resp.json()
    return {
        "summary": data.get("answer") or None,
        "results": [
            {"title": r.get("title", ""), "snippet": r.get("content", ""), "url": r.get("url", "")}
            for r in data.get("results") or []
        ],
    }


def web_search(query: str, max_results: int = WEB_SEARCH_MAX) -> Dict[str, Any]:
    """Search the web. Never raises; failures degrade to an empty result set."""
    try:
        if TAVILY_API_KEY:
            return tavily_search(query, max_results)
        with DDGS() as ddgs:
            hits = list(ddgs.text(query, max_results=max_results, region="us-en"))
        return {
            "summary": None,
            "results": [
                {"title": h.get("title", ""), "snippet": h.get("body", ""), "url": h.get("href", "")}
                for h in hits
            ],
        }
    except Exception as e:
        logger.warning("Web search error: %s", e)
        return empty_search()


def format_search_block(query: str, found: Dict[str, Any], max_results: int = WEB_SEARCH_MAX) -> str:
    results = (found.get("results") or [])[:max_results]
    if not results:
        return ""
    lines = ["", "", f'[Recent web search results for: "{query}"]']
    if found.get("summary"):
        lines.append(f"Summary: {found['summary']}")
        lines.append("")
    lines.append("Results:")
    for i, r in enumerate(results, 1):
        snippet = (r.get("snippet") or "")[:WEB_SNIPPET_CHARS]
        lines.append(f"{i}. {r.get('title', '')}")
        lines.append(f"   {snippet}")
        lines.append(f"   Source: {r.get('url', '')}")
    lines.append("")
    lines.append("Based on the above information, provide your response:")
    return "\n".join(lines) + "\n"


# ---------- Text Extraction ----------
UPLOAD_TYPES = {
    "text/plain": "text",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "application/pdf": "pdf",
}
UPLOAD_EXTENSIONS = {".txt": "text", ".md": "markdown", ".markdown": "markdown", ".pdf": "pdf"}
GENERIC_MIME_TYPES = ("", "application/octet-stream")
FILE_TYPE_MIME = {"text": "text/plain", "markdown": "text/markdown", "pdf": "application/pdf"}


def classify_upload(filename: str, content_type: Optional[str]) -> Optional[str]:
    """Map a declared MIME type (or, for generic types, the extension) to a file type."""
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in UPLOAD_TYPES:
        return UPLOAD_TYPES[mime]
    if mime in GENERIC_MIME_TYPES:
        return UPLOAD_EXTENSIONS.get(os.path.splitext(filename.lower())[1])
    return None


def extract_text_pdf(data: bytes, max_pages: int = PDF_MAX_PAGES) -> str:
    """Extract text from the first `max_pages` pages of a PDF."""
    reader = PdfReader(BytesIO(data))
    parts = []
    for page in reader.pages[:max_pages]:
        text = (page.extract_text() or "").strip()
        if text:
            parts.append(text)
    return "\n\n".join(parts)


def extract_text(data: bytes, mime_type: str) -> str:
    if mime_type == "application/pdf":
        text = extract_text_pdf(data)
    else:
        text = data.decode("utf-8", errors="ignore")
    return text[:MAX_EXTRACT_CHARS]


# ---------- Pydantic Models ----------
class AuthRequest(BaseModel):
    email: str = ""
    password: str = ""


class ChatStreamRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    file_content: Optional[str] = Field(None, alias="fileContent")
    file_name: Optional[str] = Field(None, alias="fileName")
    is_image: bool = Field(False, alias="isImage")


class PreparedTurn(BaseModel):
    conversation_id: str
    title: str
    user_message_id: int
    claim: str
    message: str
    live_content: str


# ---------- Turn Preparation ----------
# {conversation_id: claim token of the turn currently streaming}
_active_turns: Dict[str, str] = {}
_turns_lock = threading.Lock()


def claim_turn(conv_id: str, claim: str) -> bool:
    with _turns_lock:
        if conv_id in _active_turns:
            return False
        _active_turns[conv_id] = claim
        return True


def release_turn(conv_id: str, claim: str) -> None:
    """Free the slot, but only if `claim` still holds it."""
    with _turns_lock:
        if _active_turns.get(conv_id) == claim:
            del _active_turns[conv_id]


def generate_title(message: str) -> str:
    if not message:
        return "New Chat"
    title = message[:TITLE_MAX_CHARS]
    return title + "..." if len(title) < len(message) else title


def compose_user_content(
    message: str,
    file_name: Optional[str] = None,
    file_content: Optional[str] = None,
    is_image: bool = False,
    limit: Optional[int] = None,
) -> str:
    """Prefix the message with an attachment block; `limit` bounds the attached text."""
    if not file_content:
        return message
    text = file_content
    if limit is not None and len(text) > limit:
        text = text[:limit] + "..."
    label = "Attached image" if is_image else "Attached file"
    return f"[{label}: {file_name or 'untitled'}]\n{text}\n[End of {label.lower()}]\n\n{message}"


def prepare_turn(user_id: int, req: ChatStreamRequest) -> PreparedTurn:
    """Resolve the conversation and store the user turn. Runs before any event is sent."""
    if req.conversation_id:
        conv = get_conversation(req.conversation_id)
        if not conv or conv["user_id"] != user_id:
            raise HTTPException(403, "Access denied.")
    else:
        conv = create_conversation(user_id, generate_title(req.message))

    claim = uuid.uuid4().hex
    if not claim_turn(conv["id"], claim):
        raise HTTPException(409, "A response is already being generated for this conversation.")
    try:
        stored = compose_user_content(
            req.message, req.file_name, req.file_content, req.is_image, limit=FILE_EXCERPT_CHARS
        )
        message_id = add_message(conv["id"], "user", stored)
    except Exception:
        release_turn(conv["id"], claim)
        raise

    return PreparedTurn(
        conversation_id=conv["id"],
        title=conv["title"],
        user_message_id=message_id,
        claim=claim,
        message=req.message,
        live_content=compose_user_content(
            req.message, req.file_name, req.file_content, req.is_image
        ),
    )


def build_prompt(
    system_prompt: str,
    history: List[Dict[str, Any]],
    current_content: str,
    max_turns: int = HISTORY_TURNS,
) -> List[Dict[str, str]]:
    """System message, the last `max_turns` earlier messages, then the current turn."""
    messages = [{"role": "system", "content": system_prompt}]
    recent = history[-max_turns:] if max_turns > 0 else []
    for m in recent:
        if m["role"] in ("user", "assistant"):
            messages.append({"role": m["role"], "content": m["content"]})
    messages.append({"role": "user", "content": current_content})
    return messages


# ---------- Streaming Relay ----------
def sse_event(event_type: str, **fields: Any) -> str:
    return f"data: {json.dumps({'type': event_type, **fields})}\n\n"


class StreamingRelay:
    """
    Runs one chat turn as a stream of framed events:

        start, [searching], delta*, then exactly one of done | error

    The assistant message is stored only when the provider stream is exhausted,
    so a failed or abandoned turn never leaves a partial reply behind.
    """

    def __init__(
        self,
        provider,
        search: Callable[[str], Dict[str, Any]] = web_search,
        classifier: Optional[KeywordClassifier] = None,
        system_prompt: str = SYSTEM_PROMPT,
        history_turns: int = HISTORY_TURNS,
    ):
        self.provider = provider
        self.search = search
        self.classifier = classifier
        self.system_prompt = system_prompt
        self.history_turns = history_turns

    def lookup(self, query: str) -> Dict[str, Any]:
        try:
            return self.search(query) or empty_search()
        except Exception as e:
            logger.warning("Search backend failed, continuing without results: %s", e)
            return empty_search()

    async def run(self, turn: PreparedTurn):
        conv_id = turn.conversation_id
        chunks = None
        stored = False
        try:
            history = await run_in_threadpool(get_messages, conv_id)
            earlier = [m for m in history if m["id"] != turn.user_message_id]

            yield sse_event("start", conversationId=conv_id, title=turn.title)

            system = self.system_prompt
            if self.classifier is not None and self.classifier.needs_search(turn.message):
                logger.info("Web search triggered: conversation=%s", conv_id)
                yield sse_event("searching", query=turn.message)
                found = await run_in_threadpool(self.lookup, turn.message)
                system += format_search_block(turn.message, found)

            prompt = build_prompt(system, earlier, turn.live_content, self.history_turns)
            chunks = self.provider.stream(prompt)
            parts = []
            async for text in iterate_in_threadpool(chunks):
                if not text:
                    continue
                parts.append(text)
                yield sse_event("delta", text=text)

            await run_in_threadpool(add_message, conv_id, "assistant", "".join(parts))
            stored = True
            yield sse_event("done")
        except Exception:
            logger.exception("Streaming error: conversation=%s", conv_id)
            yield sse_event("error", message="Stream failed.")
        finally:
            if not stored and chunks is not None and hasattr(chunks, "close"):
                chunks.close()
            if not stored:
                logger.info("Turn ended without an assistant reply: conversation=%s", conv_id)
            release_turn(conv_id, turn.claim)


_relay: Optional[StreamingRelay] = None


def get_relay() -> StreamingRelay:
    global _relay
    if _relay is None:
        classifier = KeywordClassifier() if WEB_SEARCH_ENABLED else None
        _relay = StreamingRelay(make_provider(), web_search, classifier)
    return _relay


# ---------- FastAPI Application ----------
app = FastAPI(title=APP_TITLE)
# Middleware added last runs outermost; CORS has to wrap the limiter.
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"detail": f"{field}: {msg}" if field else msg})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------- Health ----------
@app.get("/health")
def health():
    model = OLLAMA_MODEL if COMPLETION_PROVIDER == "ollama" else CHAT_MODEL
    return {"ok": True, "provider": COMPLETION_PROVIDER, "model": model}


# ---------- Auth Endpoints ----------
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def auth_payload(user_id: int, email: str) -> Dict[str, Any]:
    return {"token": create_token(user_id, email), "user": {"userId": user_id, "email": email}}


@app.post("/api/auth/signup")
def auth_signup(req: AuthRequest):
    email = req.email.strip().lower()
    password = req.password

    if not email or not password:
        raise HTTPException(400, "Email and password required.")
    if not EMAIL_RE.match(email):
        raise HTTPException(400, "Invalid email address.")
    if len(password) < MIN_PASSWORD_CHARS:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_CHARS} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise HTTPException(400, f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")

    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    try:
        user_id = create_user(email, hashed.decode("utf-8"))
    except sqlite3.IntegrityError:
        raise HTTPException(400, "Email already registered.")

    logger.info("Account created: user_id=%s", user_id)
    return auth_payload(user_id, email)


@app.post("/api/auth/login")
def auth_login(req: AuthRequest):
    email = req.email.strip().lower()
    if not email or not req.password:
        raise HTTPException(400, "Email and password required.")

    row = get_user_by_email(email)
    password = req.password.encode("utf-8")
    if (
        not row
        or len(password) > MAX_PASSWORD_BYTES
        or not bcrypt.checkpw(password, row["password_hash"].encode("utf-8"))
    ):
        logger.info("Failed login attempt")
        raise HTTPException(401, "Invalid email or password.")

    return auth_payload(row["id"], row["email"])


@app.get("/api/auth/me")
def auth_me(user: Dict = Depends(get_current_user)):
    row = get_user(user["userId"])
    if not row:
        raise HTTPException(404, "User not found.")
    return {"userId": row["id"], "email": row["email"]}


# ---------- Conversation Endpoints ----------
def owned_conversation(conv_id: str, user: Dict) -> Dict[str, Any]:
    conv = get_conversation(conv_id)
    if not conv:
        raise HTTPException(404, "Conversation not found.")
    if conv["user_id"] != user["userId"]:
        raise HTTPException(403, "Access denied.")
    return conv


@app.get("/api/conversations")
def conversations_index(user: Dict = Depends(get_current_user)):
    return {
        "conversations": [
            {
                "id": c["id"],
                "title": c["title"],
                "createdAt": iso(c["created_at"]),
                "messageCount": c["message_count"],
            }
            for c in list_conversations(user["userId"])
        ]
    }


@app.get("/api/conversations/{conv_id}")
def conversation_detail(conv_id: str, user: Dict = Depends(get_current_user)):
    conv = owned_conversation(conv_id, user)
    return {
        "id": conv["id"],
        "title": conv["title"],
        "createdAt": iso(conv["created_at"]),
        "messages": [
            {"id": m["id"], "role": m["role"], "content": m["content"], "createdAt": iso(m["ts"])}
            for m in get_messages(conv_id)
        ],
    }


@app.delete("/api/conversations/{conv_id}")
def conversation_delete(conv_id: str, user: Dict = Depends(get_current_user)):
    owned_conversation(conv_id, user)
    delete_conversation(conv_id)
    return {"success": True, "message": "Conversation deleted."}


# ---------- Chat Endpoint ----------
@app.post("/api/chat/stream")
async def chat_stream(
    req: ChatStreamRequest,
    user: Dict = Depends(get_current_user),
    relay: StreamingRelay = Depends(get_relay),
):
    if not req.message.strip():
        raise HTTPException(400, "Message is required.")

    turn = await run_in_threadpool(prepare_turn, user["userId"], req)
    # The background release only matters if the body iterator never started.
    return StreamingResponse(
        relay.run(turn),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(release_turn, turn.conversation_id, turn.claim),
    )


# ---------- Upload Endpoint ----------
@app.post("/api/upload")
async def upload(file: UploadFile = File(...), user: Dict = Depends(get_current_user)):
    filename = (file.filename or "").strip()
    if not filename:
        raise HTTPException(400, "Missing filename")

    file_type = classify_upload(filename, file.content_type)
    if file_type is None:
        logger.info("Upload rejected (type %r): %s", file.content_type, filename)
        raise HTTPException(400, "Unsupported file type. Upload text, markdown or PDF files.")

    data = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        logger.info("Upload rejected (too large): %s", filename)
        raise HTTPException(400, f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)}MB.")

    try:
        content = await run_in_threadpool(extract_text, data, FILE_TYPE_MIME[file_type])
    except Exception as e:
        logger.error("Extraction failed for %s: %s", filename, e)
        raise HTTPException(500, "Failed to process file.")

    if not content.strip():
        raise HTTPException(400, "No readable text found in file.")

    return {
        "success": True,
        "content": content,
        "fileType": file_type,
        "fileSize": len(data),
        "fileName": filename,
        "isImage": False,
    }


# ---------- UI ----------
@app.get("/", response_class=HTMLResponse)
def ui():
    return UI_HTML


UI_HTML = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<title>Orion &mdash; AI Assistant</title>
<style>
:root{
  --bg:#0d1117;
  --panel:#161b22;
  --surface:#1f2630;
  --hover:#2a3340;
  --border:#30363d;
  --text:#e6edf3;
  --muted:#8b949e;
  --accent:#7c9cff;
  --danger:#f06a6a;
}
*{box-sizing:border-box}
html,body{margin:0;height:100%;background:var(--bg);color:var(--text);
  font:15px/1.5 system-ui,-apple-system,"Segoe UI",sans-serif}
button{font:inherit;cursor:pointer}
.hidden{display:none !important}

/* auth */
#auth-view{display:flex;align-items:center;justify-content:center;height:100%}
.auth-card{width:340px;background:var(--panel);border:1px solid var(--border);border-radius:12px;padding:28px}
.auth-card h1{margin:0 0 4px;font-size:1.6rem;letter-spacing:.08em}
.auth-card p{margin:0 0 20px;color:var(--muted)}
.auth-card input{width:100%;margin-bottom:10px;padding:10px;border-radius:8px;border:1px solid var(--border);
  background:var(--surface);color:var(--text)}
.auth-card .btn-primary{width:100%}
.auth-switch{margin-top:14px;font-size:.85rem;color:var(--muted)}
.auth-switch a{color:var(--accent);cursor:pointer}
.form-error{color:var(--danger);font-size:.85rem;margin-bottom:10px}
.btn-primary{background:var(--accent);color:#0d1117;border:0;border-radius:8px;padding:10px 16px;font-weight:600}
.btn-primary:disabled{opacity:.5;cursor:default}
.btn-ghost{background:transparent;color:var(--muted);border:1px solid var(--border);border-radius:8px;padding:6px 10px}

/* app */
#app-view{display:flex;height:100%}
#sidebar{width:260px;background:var(--panel);border-right:1px solid var(--border);display:flex;flex-direction:column}
#sidebar header{padding:14px;display:flex;gap:8px}
#sidebar header .btn-primary{flex:1}
#conv-list{flex:1;overflow-y:auto;padding:0 8px}
.conv-item{display:flex;align-items:center;padding:8px 10px;border-radius:8px;cursor:pointer;color:var(--muted)}
.conv-item:hover{background:var(--hover)}
.conv-item.active{background:var(--surface);color:var(--text)}
.conv-title{flex:1;white-space:nowrap;overflow:hidden;text-overflow:ellipsis}
.conv-delete{background:none;border:0;color:var(--muted);visibility:hidden}
.conv-item:hover .conv-delete{visibility:visible}
.conv-empty{color:var(--muted);padding:12px;font-size:.85rem}
#sidebar footer{padding:12px 14px;border-top:1px solid var(--border);display:flex;align-items:center;gap:8px;font-size:.85rem}
#user-email{flex:1;color:var(--muted);overflow:hidden;text-overflow:ellipsis}

#main{flex:1;display:flex;flex-direction:column;min-width:0}
#topbar{padding:12px 20px;border-bottom:1px solid var(--border);display:flex;align-items:center;gap:12px}
#chat-title{flex:1;font-weight:600;white-space:nowrap;overflow:hidden;text-overflow:ellipsis}
#chat-status{color:var(--muted);font-size:.85rem}
#chat-status.busy::before{content:"";display:inline-block;width:8px;height:8px;border-radius:50%;
  background:var(--accent);margin-right:6px;animation:pulse 1s infinite}
@keyframes pulse{50%{opacity:.3}}
#chat-area{flex:1;overflow-y:auto;padding:20px}
.empty-state{text-align:center;margin-top:18vh;color:var(--muted)}
.empty-state h2{color:var(--text)}
.message{display:flex;gap:12px;max-width:820px;margin:0 auto 16px}
.avatar{flex:none;width:32px;height:32px;border-radius:50%;display:flex;align-items:center;justify-content:center;
  font-size:.7rem;font-weight:700;background:var(--surface)}
.message.assistant .avatar{background:var(--accent);color:#0d1117}
.bubble{white-space:pre-wrap;word-wrap:break-word;padding-top:5px;min-width:0}
.bubble.streaming::after{content:"\\258D";animation:pulse 1s infinite;color:var(--accent)}
.bubble.failed{color:var(--danger)}

#composer{border-top:1px solid var(--border);padding:12px 20px}
#attachment{display:flex;align-items:center;gap:8px;font-size:.85rem;color:var(--muted);margin-bottom:8px}
.composer-row{display:flex;gap:8px;max-width:820px;margin:0 auto}
#chat-input{flex:1;resize:none;max-height:180px;padding:10px;border-radius:8px;border:1px solid var(--border);
  background:var(--surface);color:var(--text);font:inherit}
</style>
</head>
<body>

<div id="auth-view" class="hidden">
  <form class="auth-card" id="auth-form">
    <h1>ORION</h1>
    <p id="auth-subtitle">Sign in to continue</p>
    <div class="form-error hidden" id="auth-error"></div>
    <input id="auth-email" type="email" placeholder="Email" autocomplete="username" required/>
    <input id="auth-password" type="password" placeholder="Password" autocomplete="current-password" required/>
    <button class="btn-primary" id="auth-submit" type="submit">SIGN IN</button>
    <div class="auth-switch"><span id="auth-switch-text">No account?</span> <a id="auth-switch">Create one</a></div>
  </form>
</div>

<div id="app-view" class="hidden">
  <aside id="sidebar">
    <header><button class="btn-primary" id="new-chat-btn">+ New chat</button></header>
    <div id="conv-list"></div>
    <footer><span id="user-email"></span><button class="btn-ghost" id="logout-btn">Log out</button></footer>
  </aside>
  <section id="main">
    <div id="topbar">
      <span id="chat-title">New Chat</span>
      <span id="chat-status">Ready</span>
      <button class="btn-ghost" id="clear-btn" title="Delete this conversation">Clear</button>
    </div>
    <div id="chat-area"></div>
    <div id="composer">
      <div id="attachment" class="hidden">
        <span id="attachment-name"></span><span id="attachment-size"></span>
        <button class="btn-ghost" id="attachment-remove" type="button">&times;</button>
      </div>
      <div class="composer-row">
        <button class="btn-ghost" id="file-btn" type="button" title="Attach a text, markdown or PDF file">&#128206;</button>
        <input id="file-input" type="file" accept=".txt,.md,.markdown,.pdf,text/plain,text/markdown,application/pdf" hidden/>
        <textarea id="chat-input" rows="1" placeholder="Message Orion..."></textarea>
        <button class="btn-primary" id="send-btn">Send</button>
      </div>
    </div>
  </section>
</div>

<script>
(function () {
'use strict';

const MAX_UPLOAD_BYTES = 10 * 1024 * 1024;
const EMPTY_STATE = '<div class="empty-state"><h2>Hey, I\\'m Orion</h2><p>Your AI assistant</p></div>';

// ---- DOM helpers ----
const $ = id => document.getElementById(id);
function fmtBytes(n) {
  if (n < 1024) return n + ' B';
  if (n < 1024 * 1024) return (n / 1024).toFixed(1) + ' KB';
  return (n / (1024 * 1024)).toFixed(1) + ' MB';
}

// ---- Session (one per tab) ----
class ChatSession {
  constructor(storage) {
    this.storage = storage;
    this.token = storage.getItem('orion_token');
    try { this.user = JSON.parse(storage.getItem('orion_user') || 'null'); } catch { this.user = null; }
    this.conversationId = null;
    this.conversations = [];
    this.streaming = false;
    this.attachment = null;
  }
  signIn(data) {
    this.token = data.token;
    this.user = data.user;
    this.storage.setItem('orion_token', data.token);
    this.storage.setItem('orion_user', JSON.stringify(data.user));
  }
  signOut() {
    this.token = null;
    this.user = null;
    this.conversationId = null;
    this.conversations = [];
    this.attachment = null;
    this.storage.removeItem('orion_token');
    this.storage.removeItem('orion_user');
  }
}

// ---- Event stream decoding ----
// Frames are "data: {json}" lines. A read may end mid-line: the trailing
// fragment stays in the buffer until the next read completes it.
class EventStreamDecoder {
  constructor(prefix) {
    this.prefix = prefix || 'data:';
    this.buffer = '';
  }
  push(text) {
    this.buffer += text;
    const lines = this.buffer.split('\\n');
    this.buffer = lines.pop();
    const events = [];
    for (const raw of lines) {
      const line = raw.endsWith('\\r') ? raw.slice(0, -1) : raw;
      if (!line.startsWith(this.prefix)) continue;
      try { events.push(JSON.parse(line.slice(this.prefix.length).trim())); } catch (_) {}
    }
    return events;
  }
  flush() {
    const rest = this.buffer;
    this.buffer = '';
    return rest ? this.push(rest + '\\n') : [];
  }
}

// ---- API ----
async function api(session, method, url, body) {
  const opts = { method, headers: {} };
  if (session.token) opts.headers['Authorization'] = 'Bearer ' + session.token;
  if (body !== undefined) {
    if (body instanceof FormData) {
      opts.body = body;
    } else {
      opts.headers['Content-Type'] = 'application/json';
      opts.body = JSON.stringify(body);
    }
  }
  const r = await fetch(url, opts);
  if (r.status === 401 || r.status === 403) {
    if (url.indexOf('/api/auth/') !== 0 && url.indexOf('/api/conversations/') !== 0) {
      session.signOut();
      showAuth();
    }
  }
  const text = await r.text();
  let data;
  try { data = JSON.parse(text); } catch { throw new Error(text || ('HTTP ' + r.status)); }
  if (!r.ok) throw new Error(data.detail || ('HTTP ' + r.status));
  return data;
}

// ---- Views ----
let signupMode = false;

function showAuth() {
  $('app-view').classList.add('hidden');
  $('auth-view').classList.remove('hidden');
  $('auth-email').focus();
}
function showApp(session) {
  $('auth-view').classList.add('hidden');
  $('app-view').classList.remove('hidden');
  $('user-email').textContent = session.user ? session.user.email : '';
  resetChat(session);
  loadConversations(session);
}
function setAuthMode(signup) {
  signupMode = signup;
  $('auth-subtitle').textContent = signup ? 'Create your account' : 'Sign in to continue';
  $('auth-submit').textContent = signup ? 'CREATE ACCOUNT' : 'SIGN IN';
  $('auth-switch-text').textContent = signup ? 'Have an account?' : 'No account?';
  $('auth-switch').textContent = signup ? 'Sign in' : 'Create one';
  $('auth-error').classList.add('hidden');
}
function setStatus(text, busy) {
  const el = $('chat-status');
  el.textContent = text;
  el.className = busy ? 'busy' : '';
}
function setComposerEnabled(enabled) {
  $('send-btn').disabled = !enabled;
  $('chat-input').disabled = !enabled;
}
function scrollToBottom() {
  const area = $('chat-area');
  area.scrollTop = area.scrollHeight;
}
function appendMessage(role, text) {
  const area = $('chat-area');
  const empty = area.querySelector('.empty-state');
  if (empty) empty.remove();
  const wrap = document.createElement('div');
  wrap.className = 'message ' + role;
  const avatar = document.createElement('div');
  avatar.className = 'avatar';
  avatar.textContent = role === 'assistant' ? 'OR' : 'ME';
  const bubble = document.createElement('div');
  bubble.className = 'bubble';
  bubble.textContent = text || '';
  wrap.appendChild(avatar);
  wrap.appendChild(bubble);
  area.appendChild(wrap);
  scrollToBottom();
  return bubble;
}
function markFailed(bubble, reason) {
  bubble.classList.remove('streaming');
  bubble.classList.add('failed');
  bubble.textContent = '\\u26A0 ' + (reason || 'Error');
  setStatus('Error');
}

// ---- Auth ----
async function submitAuth(session, e) {
  e.preventDefault();
  const errorEl = $('auth-error');
  const submit = $('auth-submit');
  errorEl.classList.add('hidden');
  submit.disabled = true;
  submit.textContent = signupMode ? 'CREATING...' : 'SIGNING IN...';
  try {
    const data = await api(session, 'POST', signupMode ? '/api/auth/signup' : '/api/auth/login', {
      email: $('auth-email').value,
      password: $('auth-password').value,
    });
    session.signIn(data);
    $('auth-password').value = '';
    showApp(session);
  } catch (err) {
    errorEl.textContent = err.message;
    errorEl.classList.remove('hidden');
  } finally {
    submit.disabled = false;
    setAuthMode(signupMode);
  }
}

async function checkSession(session) {
  if (!session.token) { showAuth(); return; }
  try {
    session.user = await api(session, 'GET', '/api/auth/me');
    showApp(session);
  } catch {
    session.signOut();
    showAuth();
  }
}

// ---- Conversations ----
function renderConversations(session) {
  const el = $('conv-list');
  el.innerHTML = '';
  if (!session.conversations.length) {
    el.innerHTML = '<div class="conv-empty">Start a new conversation</div>';
    return;
  }
  for (const c of session.conversations) {
    const item = document.createElement('div');
    item.className = 'conv-item' + (c.id === session.conversationId ? ' active' : '');
    const title = document.createElement('span');
    title.className = 'conv-title';
    title.textContent = c.title;
    const del = document.createElement('button');
    del.className = 'conv-delete';
    del.title = 'Delete';
    del.textContent = '\\u00D7';
    del.addEventListener('click', ev => { ev.stopPropagation(); deleteConversation(session, c.id); });
    item.appendChild(title);
    item.appendChild(del);
    item.addEventListener('click', () => openConversation(session, c.id));
    el.appendChild(item);
  }
}

async function loadConversations(session) {
  try {
    const data = await api(session, 'GET', '/api/conversations');
    session.conversations = data.conversations || [];
    renderConversations(session);
  } catch (e) {
    console.error('Failed to load conversations:', e);
  }
}

async function openConversation(session, id) {
  if (session.streaming) return;
  try {
    const data = await api(session, 'GET', '/api/conversations/' + encodeURIComponent(id));
    session.conversationId = data.id;
    $('chat-title').textContent = data.title;
    $('chat-area').innerHTML = '';
    for (const m of data.messages) appendMessage(m.role, m.content);
    if (!data.messages.length) $('chat-area').innerHTML = EMPTY_STATE;
    renderConversations(session);
    setStatus('Ready');
  } catch (e) {
    setStatus('Error: ' + e.message);
  }
}

async function deleteConversation(session, id) {
  if (session.streaming && id === session.conversationId) return;
  try {
    await api(session, 'DELETE', '/api/conversations/' + encodeURIComponent(id));
    if (id === session.conversationId) resetChat(session);
    await loadConversations(session);
  } catch (e) {
    setStatus('Error: ' + e.message);
  }
}

function resetChat(session) {
  session.conversationId = null;
  $('chat-title').textContent = 'New Chat';
  $('chat-area').innerHTML = EMPTY_STATE;
  clearAttachment(session);
  renderConversations(session);
  setStatus('Ready');
}

// ---- Attachments ----
function clearAttachment(session) {
  session.attachment = null;
  $('file-input').value = '';
  $('attachment').classList.add('hidden');
}

async function attachFile(session, file) {
  if (!file) return;
  if (file.size > MAX_UPLOAD_BYTES) {
    setStatus('File too large. Maximum size is 10MB.');
    clearAttachment(session);
    return;
  }
  $('attachment-name').textContent = file.name;
  $('attachment-size').textContent = fmtBytes(file.size);
  $('attachment').classList.remove('hidden');
  setStatus('Processing file...', true);
  try {
    const form = new FormData();
    form.append('file', file, file.name);
    const data = await api(session, 'POST', '/api/upload', form);
    session.attachment = { name: data.fileName, content: data.content, isImage: !!data.isImage };
    setStatus('File ready: ' + data.fileName);
  } catch (e) {
    clearAttachment(session);
    setStatus('Upload failed: ' + e.message);
  }
}

// ---- Chat ----
function handleEvent(session, turn, ev) {
  switch (ev.type) {
    case 'start':
      session.conversationId = ev.conversationId;
      if (ev.title) $('chat-title').textContent = ev.title;
      loadConversations(session);
      break;
    case 'searching':
      setStatus('Searching: ' + ev.query, true);
      break;
    case 'delta':
      turn.text += ev.text;
      turn.bubble.textContent = turn.text;
      scrollToBottom();
      if (!turn.receiving) { turn.receiving = true; setStatus('Responding...', true); }
      break;
    case 'done':
      turn.finished = true;
      turn.bubble.classList.remove('streaming');
      setStatus('Ready');
      loadConversations(session);
      break;
    case 'error':
      turn.finished = true;
      markFailed(turn.bubble, ev.message);
      break;
  }
}

async function sendMessage(session) {
  const input = $('chat-input');
  const text = input.value.trim();
  if (!text || session.streaming) return;

  session.streaming = true;
  setComposerEnabled(false);
  input.value = '';
  input.style.height = 'auto';

  const attachment = session.attachment;
  appendMessage('user', attachment ? '[' + attachment.name + ']\\n' + text : text);
  const turn = { bubble: appendMessage('assistant', ''), text: '', receiving: false, finished: false };
  turn.bubble.classList.add('streaming');
  setStatus('Thinking...', true);

  try {
    const r = await fetch('/api/chat/stream', {
      method: 'POST',
      headers: { 'Content-Type': 'application/json', 'Authorization': 'Bearer ' + session.token },
      body: JSON.stringify({
        message: text,
        conversationId: session.conversationId,
        fileContent: attachment ? attachment.content : null,
        fileName: attachment ? attachment.name : null,
        isImage: attachment ? attachment.isImage : false,
      }),
    });
    if (!r.ok) {
      let detail = '';
      try { detail = (await r.json()).detail; } catch (_) {}
      throw new Error(detail || ('HTTP ' + r.status));
    }
    clearAttachment(session);

    const reader = r.body.getReader();
    const decoder = new TextDecoder();
    const frames = new EventStreamDecoder('data:');
    while (true) {
      const { value, done } = await reader.read();
      if (done) break;
      for (const ev of frames.push(decoder.decode(value, { stream: true }))) handleEvent(session, turn, ev);
    }
    for (const ev of frames.push(decoder.decode())) handleEvent(session, turn, ev);
    for (const ev of frames.flush()) handleEvent(session, turn, ev);
    if (!turn.finished) markFailed(turn.bubble, 'Connection closed');
  } catch (err) {
    console.error(err);
    markFailed(turn.bubble, err.message === 'Failed to fetch' ? 'Network error' : err.message);
  } finally {
    session.streaming = false;
    setComposerEnabled(true);
    input.focus();
  }
}

// ---- Wiring ----
const session = new ChatSession(window.localStorage);

$('auth-form').addEventListener('submit', e => submitAuth(session, e));
$('auth-switch').addEventListener('click', () => setAuthMode(!signupMode));
$('logout-btn').addEventListener('click', () => { session.signOut(); showAuth(); });
$('new-chat-btn').addEventListener('click', () => { if (!session.streaming) resetChat(session); });
$('clear-btn').addEventListener('click', () => {
  if (session.conversationId) deleteConversation(session, session.conversationId);
});
$('send-btn').addEventListener('click', () => sendMessage(session));
$('chat-input').addEventListener('keydown', e => {
  if (e.key === 'Enter' && !e.shiftKey) { e.preventDefault(); sendMessage(session); }
});
$('chat-input').addEventListener('input', function () {
  this.style.height = 'auto';
  this.style.height = Math.min(this.scrollHeight, 180) + 'px';
});
$('file-btn').addEventListener('click', () => $('file-input').click());
$('file-input').addEventListener('change', e => attachFile(session, e.target.files[0]));
$('attachment-remove').addEventListener('click', () => { clearAttachment(session); setStatus('Ready'); });

// ---- Init ----
setAuthMode(false);
checkSession(session);

})();
</script>
</body>
</html>"""

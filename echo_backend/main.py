from __future__ import annotations

import base64
from contextlib import contextmanager
import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import uuid
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import httpx
import pymysql
from pydantic import BaseModel, ConfigDict, Field
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client as SolanaClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-secret-change-me")
AUTH_SESSION_TTL_MINUTES = int(os.getenv("AUTH_SESSION_TTL_MINUTES", "120"))
ALLOW_DEMO_IDENTITY = os.getenv("ALLOW_DEMO_IDENTITY", "true").lower() == "true"
MYSQL_HOST = os.getenv("MYSQL_HOST", "localhost")
MYSQL_PORT = int(os.getenv("MYSQL_PORT", "3306"))
MYSQL_USER = os.getenv("MYSQL_USER", "echo")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "echo_password")
MYSQL_DATABASE = os.getenv("MYSQL_DATABASE", "echo")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_BASE_URL = os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1")
ELEVENLABS_TTS_MODEL = os.getenv("ELEVENLABS_TTS_MODEL", "eleven_multilingual_v2")
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
SOLANA_CLUSTER = os.getenv("SOLANA_CLUSTER", "devnet")
SOLANA_VERIFY_SIGNATURES = os.getenv("SOLANA_VERIFY_SIGNATURES", "true").lower() == "true"

ACCEPTED_AUDIO_TYPES = {"audio/webm", "audio/wav", "audio/mpeg", "audio/mp4"}
DEFAULT_VOICE_NAME = "Echo Voice Clone"
DEFAULT_SAMPLE_FILENAME = "voice-sample.webm"
MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")
MEMO_SCHEMA_VERSION = "1.0"
VOICE_HASH_SENTINEL = "not-provided"
COMMITMENT_TRANSFER_LAMPORTS = 1000
LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_FEE_LAMPORTS = 5000

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger("echo")

app = FastAPI(title="Echo Backend", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


class ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Identity(BaseModel):
    sub: str
    email: Optional[str] = None
    name: Optional[str] = None


class PersonalityResult(ResponseModel):
    type: str
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    completed_at: datetime = Field(..., alias="completedAt")


class UserRecord(BaseModel):
    id: str
    auth0_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    created_at: datetime
    assistant_id: Optional[str] = None
    thread_id: Optional[str] = None
    voice_id: Optional[str] = None
    voice_name: Optional[str] = None
    voice_sample_uploaded: bool = False
    personality_completed: bool = False
    personality_type: Optional[str] = None
    personality_data: Optional[Dict[str, Any]] = None
    diary_entry_count: int = 0
    wallet_address: Optional[str] = None
    solana_tx_hash: Optional[str] = None
    blockchain_committed_at: Optional[datetime] = None


class CommitRequest(RequestModel):
    wallet_address: str = Field(..., alias="walletAddress", min_length=1)
    personality_answers: Any = Field(..., alias="personalityAnswers")
    diary_entries: Any = Field(..., alias="diaryEntries")
    voice_data: Any = Field(None, alias="voiceData")


class CommitResponse(ResponseModel):
    success: bool = True
    transaction: str
    memo: str
    estimated_fee: float = Field(..., alias="estimatedFee")


class CommitConfirmRequest(RequestModel):
    wallet_address: str = Field(..., alias="walletAddress", min_length=1)
    signature: str = Field(..., min_length=1)


class CommitConfirmResponse(ResponseModel):
    success: bool = True
    explorer_url: str = Field(..., alias="explorerUrl")


class CommitStatusResponse(ResponseModel):
    committed: bool
    wallet_address: Optional[str] = Field(None, alias="walletAddress")
    signature: Optional[str] = None
    committed_at: Optional[datetime] = Field(None, alias="committedAt")
    explorer_url: Optional[str] = Field(None, alias="explorerUrl")


class WalletBalanceResponse(ResponseModel):
    address: str
    balance: float


class PersonalitySaveRequest(RequestModel):
    personality_type: str = Field(..., alias="personalityType", min_length=1)
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    session_id: Optional[str] = Field(None, alias="sessionId")


class PersonalitySaveResponse(ResponseModel):
    success: bool = True
    user_id: str = Field(..., alias="userId")
    message: str


class StatusMessageResponse(ResponseModel):
    success: bool = True
    message: str


class ProfileResponse(ResponseModel):
    user: UserRecord


class VoiceCloneResponse(ResponseModel):
    voice_id: str


class SpeakRequest(RequestModel):
    voice_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


def issue_session_token(
    identity: Identity,
    ttl_minutes: int = AUTH_SESSION_TTL_MINUTES,
) -> str:
    """Mint a session token for an identity the provider has already authenticated."""
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)
    payload = {
        "sub": identity.sub,
        "email": identity.email,
        "name": identity.name,
        "exp": int(expires_at.timestamp()),
    }
    payload_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64_payload = base64.urlsafe_b64encode(payload_bytes).decode("utf-8").rstrip("=")
    signature = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{b64_payload}.{signature}"


def _decode_token(token: str) -> Dict[str, object]:
    try:
        b64_payload, signature = token.split(".", 1)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid auth token.") from exc
    expected = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise HTTPException(status_code=401, detail="Invalid auth token.")
    padded = b64_payload + "=" * (-len(b64_payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid auth token payload.") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=401, detail="Invalid auth token payload.")
    return data


def _session_identity(request: Request) -> Optional[Identity]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing auth token.")
    payload = _decode_token(auth_header.split(" ", 1)[1].strip())
    sub = payload.get("sub")
    expires = payload.get("exp")
    if not isinstance(sub, str) or not sub or not isinstance(expires, int):
        raise HTTPException(status_code=401, detail="Invalid auth token payload.")
    if expires < int(time.time()):
        raise HTTPException(status_code=401, detail="Auth session expired.")
    email = payload.get("email")
    name = payload.get("name")
    return Identity(
        sub=sub,
        email=email if isinstance(email, str) else None,
        name=name if isinstance(name, str) else None,
    )


def _demo_identity(session_id: str) -> Identity:
    return Identity(
        sub=f"demo_{session_id}",
        email=f"demo-{session_id}@echo.ai",
        name="Demo User",
    )


def resolve_identity(request: Request, demo_session_id: Optional[str] = None) -> Identity:
    """Resolve the caller's identity for every handler.

    A valid session token always wins. Only when none is presented, demo
    identities are enabled and the caller supplied a quiz session id does
    this fall back to the deterministic ``demo_<sessionId>`` account.
    """
    identity = _session_identity(request)
    if identity:
        return identity
    if ALLOW_DEMO_IDENTITY and demo_session_id is not None:
        if not demo_session_id:
            raise HTTPException(status_code=400, detail="Session id is required.")
        return _demo_identity(demo_session_id)
    raise HTTPException(status_code=401, detail="Not authenticated")


def _current_identity(request: Request) -> Identity:
    return resolve_identity(request)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


PROFILE_COLUMNS = (
    "id",
    "auth0_id",
    "email",
    "name",
    "picture",
    "created_at",
    "assistant_id",
    "thread_id",
    "voice_id",
    "voice_name",
    "voice_sample_uploaded",
    "personality_completed",
    "personality_type",
    "personality_data",
    "diary_entry_count",
    "wallet_address",
    "solana_tx_hash",
    "blockchain_committed_at",
)
MUTABLE_PROFILE_DEFAULTS: Dict[str, object] = {
    "assistant_id": None,
    "thread_id": None,
    "voice_id": None,
    "voice_name": None,
    "voice_sample_uploaded": False,
    "personality_completed": False,
    "personality_type": None,
    "personality_data": None,
    "diary_entry_count": 0,
    "wallet_address": None,
    "solana_tx_hash": None,
    "blockchain_committed_at": None,
}


def profile_is_cleared(row: Dict[str, object]) -> bool:
    for column, default in MUTABLE_PROFILE_DEFAULTS.items():
        value = row.get(column)
        if isinstance(default, bool):
            value = bool(value)
        elif isinstance(default, int):
            value = int(value or 0)
        if value != default:
            return False
    return True


@contextmanager
def _db_connection():
    connection = pymysql.connect(
        host=MYSQL_HOST,
        port=MYSQL_PORT,
        user=MYSQL_USER,
        password=MYSQL_PASSWORD,
        database=MYSQL_DATABASE,
        cursorclass=pymysql.cursors.DictCursor,
        client_flag=pymysql.constants.CLIENT.FOUND_ROWS,
        autocommit=False,
    )
    try:
        yield connection
    finally:
        connection.close()


@contextmanager
def _db_transaction() -> Iterator[pymysql.cursors.DictCursor]:
    with _db_connection() as connection:
        try:
            with connection.cursor() as cursor:
                yield cursor
            connection.commit()
        except Exception:
            connection.rollback()
            raise


def _row_to_user_record(row: Dict[str, object]) -> UserRecord:
    personality_data = row.get("personality_data")
    if isinstance(personality_data, (str, bytes)):
        personality_data = json.loads(personality_data)
    committed_at = row.get("blockchain_committed_at")
    return UserRecord(
        id=str(row["id"]),
        auth0_id=row["auth0_id"],
        email=row.get("email"),
        name=row.get("name"),
        picture=row.get("picture"),
        created_at=_as_utc(row["created_at"]),
        assistant_id=row.get("assistant_id"),
        thread_id=row.get("thread_id"),
        voice_id=row.get("voice_id"),
        voice_name=row.get("voice_name"),
        voice_sample_uploaded=bool(row.get("voice_sample_uploaded")),
        personality_completed=bool(row.get("personality_completed")),
        personality_type=row.get("personality_type"),
        personality_data=personality_data,
        diary_entry_count=int(row.get("diary_entry_count") or 0),
        wallet_address=row.get("wallet_address"),
        solana_tx_hash=row.get("solana_tx_hash"),
        blockchain_committed_at=_as_utc(committed_at) if committed_at else None,
    )


class ProfileStore:
    """Access to the ``users`` and ``diary_entries`` tables.

    Every method opens its own connection. Operations that touch both tables
    run inside one transaction so a failure leaves neither half applied.
    """

    def get_by_auth0_id(self, auth0_id: str) -> Optional[UserRecord]:
        with _db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    f"SELECT {', '.join(PROFILE_COLUMNS)} FROM users WHERE auth0_id = %s",
                    (auth0_id,),
                )
                row = cursor.fetchone()
        return _row_to_user_record(row) if row else None

    def create(self, identity: Identity) -> UserRecord:
        record = UserRecord(
            id=uuid.uuid4().hex,
            auth0_id=identity.sub,
            email=identity.email,
            name=identity.name,
            created_at=datetime.now(timezone.utc),
        )
        with _db_transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (id, auth0_id, email, name, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (record.id, record.auth0_id, record.email, record.name, record.created_at),
            )
        LOGGER.info("Created profile id=%s auth0_id=%s", record.id, record.auth0_id)
        return record

    def get_or_create(self, identity: Identity) -> UserRecord:
        existing = self.get_by_auth0_id(identity.sub)
        if existing:
            return existing
        try:
            return self.create(identity)
        except pymysql.err.IntegrityError:
            concurrent = self.get_by_auth0_id(identity.sub)
            if not concurrent:
                raise
            return concurrent

    def save_personality(self, user_id: str, result: PersonalityResult) -> bool:
        with _db_transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET personality_completed = %s,
                    personality_type = %s,
                    personality_data = %s
                WHERE id = %s
                """,
                (
                    True,
                    result.type,
                    json.dumps(result.model_dump(by_alias=True, mode="json")),
                    user_id,
                ),
            )
            return cursor.rowcount > 0

    def save_voice(self, auth0_id: str, voice_id: str, voice_name: str) -> bool:
        with _db_transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET voice_id = %s, voice_name = %s, voice_sample_uploaded = %s
                WHERE auth0_id = %s
                """,
                (voice_id, voice_name, True, auth0_id),
            )
            return cursor.rowcount > 0

    def save_blockchain_commitment(
        self,
        auth0_id: str,
        wallet_address: str,
        signature: str,
        committed_at: datetime,
    ) -> bool:
        with _db_transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET wallet_address = %s, solana_tx_hash = %s, blockchain_committed_at = %s
                WHERE auth0_id = %s
                """,
                (wallet_address, signature, committed_at, auth0_id),
            )
            return cursor.rowcount > 0

    def _lock_user_row(
        self, cursor: pymysql.cursors.DictCursor, auth0_id: str
    ) -> Optional[Dict[str, object]]:
        cursor.execute(
            f"SELECT id, {', '.join(MUTABLE_PROFILE_DEFAULTS)} FROM users "
            "WHERE auth0_id = %s FOR UPDATE",
            (auth0_id,),
        )
        return cursor.fetchone()

    def clear_user_data(self, auth0_id: str) -> Optional[bool]:
        """Reset a profile to its identity columns.

        Returns ``None`` when no profile exists and ``False`` when the profile
        holds nothing to clear, so a repeated clear is a reported no-op.
        """
        with _db_transaction() as cursor:
            row = self._lock_user_row(cursor, auth0_id)
            if row is None:
                return None
            user_id = str(row["id"])
            cursor.execute(
                "SELECT COUNT(*) AS entries FROM diary_entries WHERE user_id = %s",
                (user_id,),
            )
            entries = int((cursor.fetchone() or {}).get("entries") or 0)
            if not entries and profile_is_cleared(row):
                return False
            cursor.execute("DELETE FROM diary_entries WHERE user_id = %s", (user_id,))
            assignments = ", ".join(f"{column} = %s" for column in MUTABLE_PROFILE_DEFAULTS)
            cursor.execute(
                f"UPDATE users SET {assignments} WHERE id = %s",
                (*MUTABLE_PROFILE_DEFAULTS.values(), user_id),
            )
        return True

    def delete_user(self, auth0_id: str) -> bool:
        with _db_transaction() as cursor:
            row = self._lock_user_row(cursor, auth0_id)
            if row is None:
                return False
            user_id = str(row["id"])
            cursor.execute("DELETE FROM diary_entries WHERE user_id = %s", (user_id,))
            cursor.execute("DELETE FROM users WHERE id = %s", (user_id,))
        return True


class VoiceGatewayError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class VoiceClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise VoiceGatewayError("Missing ELEVENLABS_API_KEY", 500)
        return {"xi-api-key": self.api_key}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise VoiceGatewayError(f"Voice service unreachable: {exc}", 502) from exc

    async def clone_voice(
        self,
        sample: bytes,
        *,
        filename: str,
        content_type: str,
        name: Optional[str] = None,
    ) -> str:
        headers = self._headers()
        response = await self._post(
            "/voices/add",
            headers=headers,
            data={"name": (name or "").strip() or DEFAULT_VOICE_NAME},
            files={"files": (filename or DEFAULT_SAMPLE_FILENAME, sample, content_type)},
        )
        if response.status_code >= 400:
            raise VoiceGatewayError(
                response.text or "Failed to clone voice",
                response.status_code,
            )
        voice_id = response.json().get("voice_id")
        if not voice_id:
            raise VoiceGatewayError("Voice ID missing from ElevenLabs", 502)
        return voice_id

    async def text_to_speech(self, voice_id: str, text: str) -> Tuple[bytes, str]:
        headers = {
            **self._headers(),
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        response = await self._post(
            f"/text-to-speech/{quote(voice_id, safe='')}",
            headers=headers,
            json={"text": text, "model_id": ELEVENLABS_TTS_MODEL},
        )
        if response.status_code >= 400:
            raise VoiceGatewayError(
                response.text or "Failed to generate speech",
                response.status_code,
            )
        content_type = response.headers.get("content-type") or "audio/mpeg"
        return response.content, content_type


class LedgerError(Exception):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def parse_wallet_address(address: str) -> Pubkey:
    return Pubkey.from_string(address.strip())


def commitment_hash(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_memo_payload(
    *,
    user_id: str,
    email: Optional[str],
    personality_hash: str,
    diary_hash: str,
    voice_hash: Optional[str],
    timestamp: int,
) -> str:
    payload = {
        "userId": user_id,
        "email": email or "",
        "personalityHash": personality_hash,
        "diaryHash": diary_hash,
        "voiceHash": voice_hash or VOICE_HASH_SENTINEL,
        "timestamp": timestamp,
        "version": MEMO_SCHEMA_VERSION,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def build_commitment_instructions(wallet: Pubkey, memo: str) -> List[Instruction]:
    memo_instruction = Instruction(
        MEMO_PROGRAM_ID,
        memo.encode("utf-8"),
        [AccountMeta(pubkey=wallet, is_signer=True, is_writable=False)],
    )
    self_transfer = transfer(
        TransferParams(
            from_pubkey=wallet,
            to_pubkey=wallet,
            lamports=COMMITMENT_TRANSFER_LAMPORTS,
        )
    )
    return [memo_instruction, self_transfer]


class SolanaGateway:
    def __init__(
        self,
        client: SolanaClient,
        cluster: str = SOLANA_CLUSTER,
        verify_signatures: bool = SOLANA_VERIFY_SIGNATURES,
    ) -> None:
        self.client = client
        self.cluster = cluster
        self.verify_signatures = verify_signatures

    def _rpc(self, action: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except (SolanaRpcException, RPCException, httpx.HTTPError) as exc:
            raise LedgerError(f"Failed to {action}: {exc}") from exc

    def latest_blockhash(self) -> Hash:
        response = self._rpc("fetch latest blockhash", self.client.get_latest_blockhash)
        return response.value.blockhash

    def build_commitment_transaction(self, wallet: Pubkey, memo: str) -> Transaction:
        message = Message.new_with_blockhash(
            build_commitment_instructions(wallet, memo),
            wallet,
            self.latest_blockhash(),
        )
        return Transaction.new_unsigned(message)

    def estimate_fee(self, message: Message) -> int:
        try:
            response = self._rpc(
                "estimate transaction fee",
                lambda: self.client.get_fee_for_message(message),
            )
        except LedgerError as exc:
            LOGGER.warning("%s; using default fee estimate", exc.message)
            return DEFAULT_FEE_LAMPORTS
        return response.value if response.value is not None else DEFAULT_FEE_LAMPORTS

    def signature_landed(self, signature: Signature) -> bool:
        response = self._rpc(
            "fetch signature status",
            lambda: self.client.get_signature_statuses(
                [signature], search_transaction_history=True
            ),
        )
        status = response.value[0] if response.value else None
        return status is not None and status.err is None

    def balance_sol(self, wallet: Pubkey) -> float:
        response = self._rpc("fetch wallet balance", lambda: self.client.get_balance(wallet))
        return response.value / LAMPORTS_PER_SOL

    def explorer_url(self, signature: str) -> str:
        return f"https://explorer.solana.com/tx/{signature}?cluster={self.cluster}"


PROFILE_STORE = ProfileStore()
VOICE_CLIENT = VoiceClient(ELEVENLABS_BASE_URL, ELEVENLABS_API_KEY)
SOLANA_GATEWAY = SolanaGateway(SolanaClient(SOLANA_RPC_URL, commitment=Confirmed))


def get_profile_store() -> ProfileStore:
    return PROFILE_STORE


def get_voice_client() -> VoiceClient:
    return VOICE_CLIENT


def get_solana_gateway() -> SolanaGateway:
    return SOLANA_GATEWAY


def _format_validation_errors(errors: List[Dict[str, Any]]) -> str:
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        message = error.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid request."


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": _format_validation_errors(list(exc.errors()))},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


@app.on_event("startup")
def _log_configuration() -> None:
    LOGGER.info(
        "Echo backend starting rpc=%s cluster=%s verify_signatures=%s demo_identity=%s",
        SOLANA_RPC_URL,
        SOLANA_CLUSTER,
        SOLANA_GATEWAY.verify_signatures,
        ALLOW_DEMO_IDENTITY,
    )
    if not ELEVENLABS_API_KEY:
        LOGGER.warning("ELEVENLABS_API_KEY is not set; voice endpoints will fail.")
    if AUTH_SECRET == "dev-secret-change-me":
        LOGGER.warning("AUTH_SECRET is using the development default.")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/user/me", response_model=ProfileResponse)
def user_me(
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
) -> ProfileResponse:
    try:
        user = store.get_or_create(identity)
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error loading profile for %s", identity.sub)
        raise HTTPException(status_code=500, detail="Failed to load user profile.") from exc
    return ProfileResponse(user=user)


@app.post("/personality/save", response_model=PersonalitySaveResponse)
def personality_save(
    payload: PersonalitySaveRequest,
    request: Request,
    store: ProfileStore = Depends(get_profile_store),
) -> PersonalitySaveResponse:
    identity = resolve_identity(request, demo_session_id=payload.session_id)
    result = PersonalityResult(
        type=payload.personality_type,
        dimensions=payload.dimensions,
        description=payload.description,
        completed_at=datetime.now(timezone.utc),
    )
    try:
        user = store.get_or_create(identity)
        store.save_personality(user.id, result)
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error saving personality results for %s", identity.sub)
        raise HTTPException(
            status_code=500, detail="Failed to save personality results"
        ) from exc
    LOGGER.info("Saved personality type=%s for user=%s", result.type, user.id)
    return PersonalitySaveResponse(
        user_id=user.id,
        message="Personality results saved successfully!",
    )


@app.post("/user/clear-data", response_model=StatusMessageResponse)
def user_clear_data(
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
) -> StatusMessageResponse:
    try:
        cleared = store.clear_user_data(identity.sub)
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error clearing user data for %s", identity.sub)
        raise HTTPException(status_code=500, detail="Failed to clear user data") from exc
    if cleared is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not cleared:
        raise HTTPException(status_code=404, detail="No user data to clear")
    LOGGER.info("Cleared user data for %s", identity.sub)
    return StatusMessageResponse(message="All user data cleared successfully")


@app.post("/user/delete", response_model=StatusMessageResponse)
def user_delete(
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
) -> StatusMessageResponse:
    try:
        deleted = store.delete_user(identity.sub)
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error deleting account for %s", identity.sub)
        raise HTTPException(status_code=500, detail="Failed to delete account") from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="User not found")
    LOGGER.info("Deleted account for %s", identity.sub)
    return StatusMessageResponse(message="Account deleted successfully")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return not (value.strip() if isinstance(value, str) else value)
    return False


@app.post("/blockchain/commit", response_model=CommitResponse)
def blockchain_commit(
    payload: CommitRequest,
    identity: Identity = Depends(_current_identity),
    ledger: SolanaGateway = Depends(get_solana_gateway),
) -> CommitResponse:
    try:
        wallet = parse_wallet_address(payload.wallet_address)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid wallet address") from exc
    if _is_blank(payload.personality_answers) or _is_blank(payload.diary_entries):
        raise HTTPException(
            status_code=400,
            detail="Personality answers and diary entries are required.",
        )
    memo = build_memo_payload(
        user_id=identity.sub,
        email=identity.email,
        personality_hash=commitment_hash(payload.personality_answers),
        diary_hash=commitment_hash(payload.diary_entries),
        voice_hash=None if _is_blank(payload.voice_data) else commitment_hash(payload.voice_data),
        timestamp=int(time.time() * 1000),
    )
    try:
        transaction = ledger.build_commitment_transaction(wallet, memo)
    except LedgerError as exc:
        LOGGER.warning("Commitment transaction for %s failed: %s", identity.sub, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    LOGGER.info("Built commitment transaction for %s wallet=%s", identity.sub, wallet)
    return CommitResponse(
        transaction=base64.b64encode(bytes(transaction)).decode("ascii"),
        memo=memo,
        estimated_fee=ledger.estimate_fee(transaction.message) / LAMPORTS_PER_SOL,
    )


@app.post("/blockchain/commit/confirm", response_model=CommitConfirmResponse)
def blockchain_commit_confirm(
    payload: CommitConfirmRequest,
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
    ledger: SolanaGateway = Depends(get_solana_gateway),
) -> CommitConfirmResponse:
    try:
        parse_wallet_address(payload.wallet_address)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid wallet address") from exc
    try:
        signature = Signature.from_string(payload.signature)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid transaction signature") from exc
    if ledger.verify_signatures:
        try:
            landed = ledger.signature_landed(signature)
        except LedgerError as exc:
            LOGGER.warning("Signature lookup for %s failed: %s", identity.sub, exc.message)
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
        if not landed:
            raise HTTPException(
                status_code=400,
                detail="Transaction has not been confirmed on-chain.",
            )
    try:
        updated = store.save_blockchain_commitment(
            identity.sub,
            payload.wallet_address,
            payload.signature,
            datetime.now(timezone.utc),
        )
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error confirming blockchain commitment for %s", identity.sub)
        raise HTTPException(
            status_code=500, detail="Failed to confirm blockchain commitment"
        ) from exc
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    LOGGER.info("Confirmed commitment for %s signature=%s", identity.sub, payload.signature)
    return CommitConfirmResponse(explorer_url=ledger.explorer_url(payload.signature))


@app.get("/blockchain/status", response_model=CommitStatusResponse)
def blockchain_status(
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
    ledger: SolanaGateway = Depends(get_solana_gateway),
) -> CommitStatusResponse:
    user = store.get_by_auth0_id(identity.sub)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    signature = user.solana_tx_hash
    return CommitStatusResponse(
        committed=bool(user.wallet_address and signature),
        wallet_address=user.wallet_address,
        signature=signature,
        committed_at=user.blockchain_committed_at,
        explorer_url=ledger.explorer_url(signature) if signature else None,
    )


@app.get("/blockchain/balance/{address}", response_model=WalletBalanceResponse)
def blockchain_balance(
    address: str,
    identity: Identity = Depends(_current_identity),
    ledger: SolanaGateway = Depends(get_solana_gateway),
) -> WalletBalanceResponse:
    try:
        wallet = parse_wallet_address(address)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid wallet address") from exc
    try:
        balance = ledger.balance_sol(wallet)
    except LedgerError as exc:
        LOGGER.warning("Balance lookup for %s failed: %s", address, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return WalletBalanceResponse(address=str(wallet), balance=balance)


def _normalize_media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


@app.post("/voice/clone", response_model=VoiceCloneResponse)
async def voice_clone(
    audio: Optional[UploadFile] = File(None),
    name: Optional[str] = Form(None),
    identity: Identity = Depends(_current_identity),
    store: ProfileStore = Depends(get_profile_store),
    voice: VoiceClient = Depends(get_voice_client),
) -> VoiceCloneResponse:
    if audio is None:
        raise HTTPException(status_code=400, detail="Missing audio file")
    media_type = _normalize_media_type(audio.content_type)
    if media_type not in ACCEPTED_AUDIO_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported audio type: {audio.content_type or 'unknown'}",
        )
    sample = await audio.read()
    if not sample:
        raise HTTPException(status_code=400, detail="Audio file is empty.")
    voice_name = (name or "").strip() or DEFAULT_VOICE_NAME
    try:
        voice_id = await voice.clone_voice(
            sample,
            filename=audio.filename or DEFAULT_SAMPLE_FILENAME,
            content_type=media_type,
            name=voice_name,
        )
    except VoiceGatewayError as exc:
        LOGGER.warning("Voice clone for %s failed (%s): %s", identity.sub, exc.status_code, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    try:
        recorded = store.save_voice(identity.sub, voice_id, voice_name)
    except pymysql.MySQLError as exc:
        LOGGER.exception("Error recording cloned voice %s for %s", voice_id, identity.sub)
        raise HTTPException(status_code=500, detail="Failed to record cloned voice") from exc
    if not recorded:
        LOGGER.warning("Cloned voice %s was not recorded on a profile for %s", voice_id, identity.sub)
    LOGGER.info("Cloned voice %s for %s", voice_id, identity.sub)
    return VoiceCloneResponse(voice_id=voice_id)


@app.post("/voice/speak")
async def voice_speak(
    payload: SpeakRequest,
    identity: Identity = Depends(_current_identity),
    voice: VoiceClient = Depends(get_voice_client),
) -> Response:
    try:
        audio, content_type = await voice.text_to_speech(payload.voice_id, payload.text)
    except VoiceGatewayError as exc:
        LOGGER.warning("Speech synthesis for %s failed (%s): %s", identity.sub, exc.status_code, exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return Response(content=audio, media_type=content_type)

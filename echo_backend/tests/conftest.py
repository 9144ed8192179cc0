from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient
from solders.hash import Hash

from echo_backend.main import (
    MUTABLE_PROFILE_DEFAULTS,
    Identity,
    PersonalityResult,
    ProfileStore,
    SolanaGateway,
    UserRecord,
    VoiceClient,
    app,
    get_profile_store,
    get_solana_gateway,
    get_voice_client,
    issue_session_token,
    profile_is_cleared,
)


class InMemoryProfileStore(ProfileStore):
    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}
        self.diary_entries: List[Dict[str, str]] = []

    def get_by_auth0_id(self, auth0_id: str) -> Optional[UserRecord]:
        user = self.users.get(auth0_id)
        return user.model_copy(deep=True) if user else None

    def create(self, identity: Identity) -> UserRecord:
        record = UserRecord(
            id=uuid.uuid4().hex,
            auth0_id=identity.sub,
            email=identity.email,
            name=identity.name,
            created_at=datetime.now(timezone.utc),
        )
        self.users[identity.sub] = record
        return record.model_copy(deep=True)

    def add_diary_entry(self, auth0_id: str, content: str) -> None:
        user = self.users[auth0_id]
        self.diary_entries.append({"user_id": user.id, "content": content})
        user.diary_entry_count += 1

    def diary_count(self, user_id: str) -> int:
        return sum(1 for entry in self.diary_entries if entry["user_id"] == user_id)

    def _by_id(self, user_id: str) -> Optional[UserRecord]:
        return next((user for user in self.users.values() if user.id == user_id), None)

    def save_personality(self, user_id: str, result: PersonalityResult) -> bool:
        user = self._by_id(user_id)
        if not user:
            return False
        user.personality_completed = True
        user.personality_type = result.type
        user.personality_data = result.model_dump(by_alias=True, mode="json")
        return True

    def save_voice(self, auth0_id: str, voice_id: str, voice_name: str) -> bool:
        user = self.users.get(auth0_id)
        if not user:
            return False
        user.voice_id = voice_id
        user.voice_name = voice_name
        user.voice_sample_uploaded = True
        return True

    def save_blockchain_commitment(
        self,
        auth0_id: str,
        wallet_address: str,
        signature: str,
        committed_at: datetime,
    ) -> bool:
        user = self.users.get(auth0_id)
        if not user:
            return False
        user.wallet_address = wallet_address
        user.solana_tx_hash = signature
        user.blockchain_committed_at = committed_at
        return True

    def clear_user_data(self, auth0_id: str) -> Optional[bool]:
        user = self.users.get(auth0_id)
        if not user:
            return None
        if not self.diary_count(user.id) and profile_is_cleared(user.model_dump()):
            return False
        self.diary_entries = [e for e in self.diary_entries if e["user_id"] != user.id]
        for column, default in MUTABLE_PROFILE_DEFAULTS.items():
            setattr(user, column, default)
        return True

    def delete_user(self, auth0_id: str) -> bool:
        user = self.users.get(auth0_id)
        if not user:
            return False
        self.diary_entries = [e for e in self.diary_entries if e["user_id"] != user.id]
        del self.users[auth0_id]
        return True


class FakeSolanaClient:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.blockhash = Hash.default()
        self.signature_status: Optional[SimpleNamespace] = SimpleNamespace(err=None)
        self.fee: Optional[int] = 5000
        self.lamports = 2_500_000_000

    def get_latest_blockhash(self):
        self.calls.append("get_latest_blockhash")
        return SimpleNamespace(value=SimpleNamespace(blockhash=self.blockhash))

    def get_fee_for_message(self, message):
        self.calls.append("get_fee_for_message")
        return SimpleNamespace(value=self.fee)

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        self.calls.append("get_signature_statuses")
        return SimpleNamespace(value=[self.signature_status])

    def get_balance(self, pubkey):
        self.calls.append("get_balance")
        return SimpleNamespace(value=self.lamports)


class VoiceAPI:
    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = self._default

    def _default(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/voices/add"):
            return httpx.Response(200, json={"voice_id": "voice-123"})
        return httpx.Response(200, content=b"ID3-audio", headers={"Content-Type": "audio/mpeg"})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture(autouse=True)
def reset_state() -> None:
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def store() -> InMemoryProfileStore:
    profile_store = InMemoryProfileStore()
    app.dependency_overrides[get_profile_store] = lambda: profile_store
    return profile_store


@pytest.fixture()
def solana_client() -> FakeSolanaClient:
    return FakeSolanaClient()


@pytest.fixture()
def ledger(solana_client: FakeSolanaClient) -> SolanaGateway:
    gateway = SolanaGateway(solana_client, cluster="devnet", verify_signatures=True)
    app.dependency_overrides[get_solana_gateway] = lambda: gateway
    return gateway


@pytest.fixture()
def voice_api() -> VoiceAPI:
    api = VoiceAPI()
    client = VoiceClient(
        "https://voice.test/v1",
        "test-key",
        transport=httpx.MockTransport(api),
    )
    app.dependency_overrides[get_voice_client] = lambda: client
    return api


@pytest.fixture()
def client(store: InMemoryProfileStore, ledger: SolanaGateway, voice_api: VoiceAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def identity() -> Identity:
    return Identity(
        sub=f"auth0|{uuid.uuid4().hex}",
        email="ada@example.com",
        name="Ada",
    )


@pytest.fixture()
def auth_headers(identity: Identity) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(identity)}"}


@pytest.fixture()
def profile(store: InMemoryProfileStore, identity: Identity) -> UserRecord:
    return store.create(identity)

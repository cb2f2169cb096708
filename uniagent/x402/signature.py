"""
EIP-712 typed-data signing for x402 payment authorizations.

This module builds the EIP-3009 TransferWithAuthorization message that the
``exact`` EVM scheme settles, and provides two interchangeable signers: a
remote custodial signer for delegated wallets and a local eth_account signer
for development and tests.
"""

import base64
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from eth_account import Account
from eth_account.messages import encode_typed_data

from uniagent.core.config import Settings, settings
from uniagent.core.errors import ErrorType, PaymentFailedError, SigningError
from uniagent.core.payment_errors import PaymentErrorClassifier
from uniagent.schemas.agent import PayerIdentity
from uniagent.schemas.payment import PaymentRequirement

logger = logging.getLogger(__name__)

# EIP-712 Type definitions
EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

PRIMARY_TYPE = "TransferWithAuthorization"

NAMED_NETWORKS = {
    "base-sepolia": 84532,
    "base": 8453,
    "sepolia": 11155111,
}


@runtime_checkable
class TypedDataSigner(Protocol):
    """Anything that can produce an EIP-712 signature for ``address``."""

    address: str

    async def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        message: dict[str, Any],
        primary_type: str,
    ) -> str:
        ...


@dataclass
class TypedData:
    """An EIP-712 typed-data document ready for signing."""

    domain: dict[str, Any]
    message: dict[str, Any]
    types: dict[str, list[dict[str, str]]] = field(
        default_factory=lambda: dict(TRANSFER_WITH_AUTHORIZATION_TYPES)
    )
    primary_type: str = PRIMARY_TYPE


def parse_chain_id(network: str) -> int:
    """
    Resolve a chain id from a CAIP-2 id (``eip155:84532``) or a named network.

    Raises:
        PaymentFailedError: If the network is not recognised
    """
    if network.startswith("eip155:"):
        reference = network.split(":", 1)[1]
        if reference.isdigit():
            return int(reference)
    elif network in NAMED_NETWORKS:
        return NAMED_NETWORKS[network]
    raise PaymentFailedError(
        f"Unsupported payment network: {network}",
        details={"network": network},
        suggestion="Choose an agent that accepts payment on a supported EVM network.",
        error_type=ErrorType.NETWORK_MISMATCH,
    )


def generate_nonce() -> str:
    """Fresh cryptographically random 32-byte nonce as 0x-prefixed hex."""
    return "0x" + secrets.token_bytes(32).hex()


def build_transfer_authorization(
    requirement: PaymentRequirement,
    from_address: str,
    app_settings: Settings | None = None,
    now: int | None = None,
) -> TypedData:
    """
    Build the TransferWithAuthorization typed data for a requirement.

    Args:
        requirement: Accepted payment requirement
        from_address: Payer wallet address
        app_settings: Settings supplying EIP-712 name/version defaults
        now: Current unix time (defaults to the wall clock)

    Returns:
        TypedData with a fresh nonce and a one-hour validity window
    """
    cfg = app_settings or settings
    issued_at = int(time.time()) if now is None else now
    domain = {
        "name": requirement.extra.get("name") or cfg.usdc_eip712_name,
        "version": requirement.extra.get("version") or cfg.usdc_eip712_version,
        "chainId": parse_chain_id(requirement.network),
        "verifyingContract": requirement.asset or cfg.usdc_address,
    }
    message = {
        "from": from_address,
        "to": requirement.pay_to,
        "value": requirement.amount or 0,
        "validAfter": issued_at,
        "validBefore": issued_at + cfg.payment_validity_seconds,
        "nonce": generate_nonce(),
    }
    return TypedData(domain=domain, message=message)


def _serialize_value(value: Any, type_name: str, types: dict[str, list[dict[str, str]]]) -> Any:
    if type_name.endswith("[]"):
        return [_serialize_value(item, type_name[:-2], types) for item in value]
    if type_name in types:
        return _serialize_struct(value, types[type_name], types)
    if type_name.startswith(("uint", "int")):
        return str(int(value))
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


def _serialize_struct(
    data: dict[str, Any],
    fields: list[dict[str, str]],
    types: dict[str, list[dict[str, str]]],
) -> dict[str, Any]:
    result = dict(data)
    for spec in fields:
        if spec["name"] in data:
            result[spec["name"]] = _serialize_value(data[spec["name"]], spec["type"], types)
    return result


def serialize_typed_data(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    message: dict[str, Any],
    primary_type: str,
) -> dict[str, Any]:
    """
    Make typed data JSON-safe for a remote signer.

    Every integer-typed field, in the domain and nested structs alike, is
    converted to a decimal string; byte strings become 0x-hex.
    """
    all_types = {"EIP712Domain": EIP712_DOMAIN_TYPE, **types}
    return {
        "domain": _serialize_struct(domain, EIP712_DOMAIN_TYPE, all_types),
        "types": all_types,
        "primary_type": primary_type,
        "message": _serialize_struct(message, all_types[primary_type], all_types),
    }


def _signer_suggestion(message: str) -> str | None:
    lowered = message.lower()
    if "authorization" in lowered:
        return "Check that the signer authorization key (SIGNER_AUTHORIZATION_SIGNATURE) is set correctly."
    if "delegated" in lowered or "permission" in lowered:
        return "The wallet is not delegated. Delegate the wallet from the client before running paid tasks."
    return None


class CustodialTypedDataSigner:
    """
    Remote custodial signer for delegated wallets.

    Signs through the wallet service's JSON-RPC endpoint on behalf of a wallet
    the user has delegated out-of-band.
    """

    def __init__(
        self,
        wallet_id: str,
        wallet_address: str,
        http_client: httpx.AsyncClient | None = None,
        app_settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ):
        self.wallet_id = wallet_id
        self.address = wallet_address
        self.settings = app_settings or settings
        self.logger = logger or logging.getLogger(__name__)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.signing_timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.signer_app_id:
            credentials = f"{self.settings.signer_app_id}:{self.settings.signer_app_secret or ''}"
            headers["Authorization"] = "Basic " + base64.b64encode(credentials.encode()).decode()
            headers["privy-app-id"] = self.settings.signer_app_id
        if self.settings.signer_authorization_signature:
            headers["privy-authorization-signature"] = self.settings.signer_authorization_signature
        return headers

    def _fail(self, message: str, error: BaseException | None = None) -> SigningError:
        classified = (
            PaymentErrorClassifier.classify_exception(error)
            if isinstance(error, httpx.HTTPError)
            else PaymentErrorClassifier.classify_reason(message)
        )
        suggestion = _signer_suggestion(message) or classified.suggestion
        self.logger.error(f"Failed to sign typed data for wallet {self.wallet_id}: {message}")
        return SigningError(
            classified.message if isinstance(error, httpx.HTTPError) else f"Signing failed: {message}",
            details={"wallet_id": self.wallet_id, "original": message},
            suggestion=suggestion,
            error_type=classified.kind,
        )

    async def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        message: dict[str, Any],
        primary_type: str = PRIMARY_TYPE,
    ) -> str:
        """
        Sign typed data with the delegated wallet.

        Raises:
            SigningError: Classified signer or transport failure
        """
        self.logger.info(
            f"Signing {primary_type} via custodial wallet {self.wallet_id} ({self.address})"
        )
        url = f"{self.settings.signer_api_url.rstrip('/')}/v1/wallets/{self.wallet_id}/rpc"
        body = {
            "method": "eth_signTypedData_v4",
            "params": {"typed_data": serialize_typed_data(domain, types, message, primary_type)},
        }

        try:
            response = await self.client.post(
                url,
                json=body,
                headers=self._headers(),
                timeout=self.settings.signing_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise self._fail(str(e) or type(e).__name__, e) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
                reason = payload.get("error") or payload.get("message") or response.text
            except ValueError:
                reason = response.text
            raise self._fail(f"HTTP {response.status_code}: {reason}")

        try:
            signature = response.json()["data"]["signature"]
        except (ValueError, KeyError, TypeError) as e:
            raise self._fail(f"Unexpected signer response: {e}") from e

        self.logger.info(f"Signature created via delegated wallet: {signature[:10]}...")
        return signature

    async def close(self):
        """Close the HTTP client if this signer created it."""
        if self._owns_client:
            await self.client.aclose()


class LocalAccountSigner:
    """
    Local eth_account signer.

    Development only; production payments use the custodial signer.
    """

    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        logger.info(f"Initialized local signer with address: {self.address}")

    @staticmethod
    def _encode(
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        message: dict[str, Any],
    ):
        message_data = dict(message)
        nonce = message_data.get("nonce")
        if isinstance(nonce, str):
            message_data["nonce"] = bytes.fromhex(nonce.removeprefix("0x"))
        return encode_typed_data(
            domain_data=domain,
            message_types=types,
            message_data=message_data,
        )

    async def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        message: dict[str, Any],
        primary_type: str = PRIMARY_TYPE,
    ) -> str:
        """Sign typed data with the local key."""
        try:
            signed_message = self.account.sign_message(self._encode(domain, types, message))
        except (ValueError, TypeError) as e:
            classified = PaymentErrorClassifier.classify_reason(str(e))
            logger.error(f"Failed to sign {primary_type} with local key {self.address}: {e}")
            raise SigningError(
                f"Signing failed: {e}",
                details={"primary_type": primary_type, "original": str(e)},
                suggestion=classified.suggestion,
                error_type=classified.kind,
            ) from e

        # Ensure signature has 0x prefix
        signature_hex = signed_message.signature.hex()
        if not signature_hex.startswith("0x"):
            signature_hex = "0x" + signature_hex
        return signature_hex

    @classmethod
    def recover_signer(
        cls,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        message: dict[str, Any],
        signature: str,
    ) -> str:
        """Recover the address that produced ``signature``."""
        return Account.recover_message(cls._encode(domain, types, message), signature=signature)


def create_signer(
    identity: PayerIdentity,
    app_settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> TypedDataSigner:
    """
    Pick the signer for a payer identity.

    A configured development private key takes precedence; otherwise the
    delegated wallet is used through the custodial signer.
    """
    cfg = app_settings or settings
    if cfg.agent_wallet_private_key:
        return LocalAccountSigner(cfg.agent_wallet_private_key)
    return CustodialTypedDataSigner(
        identity.wallet_id,
        identity.wallet_address,
        http_client=http_client,
        app_settings=cfg,
    )

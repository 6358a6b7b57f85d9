"""
Jupiter API Client for quotes, route sampling and swap instruction bundles.
"""
import httpx
import time
import asyncio
import base64
from typing import Dict, List, Optional, Any, Tuple, Union
from dataclasses import dataclass, field
import logging

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .constants import COMPUTE_BUDGET_PROGRAM_ID, DEFAULT_SLIPPAGE_BPS

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Minimum-interval rate limiter for Jupiter API requests.

    Ensures strict rate limiting: 1 request per second by default.
    """

    def __init__(self, requests_per_second: float = 1.0):
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._last_request_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made (respecting rate limit)."""
        async with self._lock:
            current_time = time.monotonic()
            time_since_last = current_time - self._last_request_time

            if time_since_last < self.min_interval:
                await asyncio.sleep(self.min_interval - time_since_last)

            self._last_request_time = time.monotonic()


@dataclass
class JupiterQuote:
    """Quote response from Jupiter API."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    route_plan: List[Dict[str, Any]]
    context_slot: Optional[int] = None
    time_taken: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def dex_labels(self) -> List[str]:
        """AMM labels used by this route, in route order."""
        labels = []
        for step in self.route_plan:
            label = (step.get("swapInfo") or {}).get("label")
            if label and label not in labels:
                labels.append(label)
        return labels

    def to_request_payload(self, slippage_bps: int) -> Dict[str, Any]:
        """Quote body as swap-instructions expects it."""
        if self.raw:
            return self.raw
        return {
            "inputMint": self.input_mint,
            "inAmount": str(self.in_amount),
            "outputMint": self.output_mint,
            "outAmount": str(self.out_amount),
            "otherAmountThreshold": str(self.out_amount),
            "swapMode": "ExactIn",
            "slippageBps": slippage_bps,
            "priceImpactPct": self.price_impact_pct,
            "routePlan": self.route_plan
        }


@dataclass
class SwapAccountMeta:
    """Account metadata for swap instruction."""
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass
class SwapInstruction:
    """Single instruction from Jupiter API (base64 data)."""
    program_id: str
    accounts: List[SwapAccountMeta]
    data: str

    def to_instruction(self) -> Instruction:
        """
        Convert to a solders Instruction.

        Raises:
            ValueError: If a pubkey or the data payload is malformed
        """
        program_id = Pubkey.from_string(self.program_id)
        accounts = [
            AccountMeta(
                pubkey=Pubkey.from_string(acc.pubkey),
                is_signer=acc.is_signer,
                is_writable=acc.is_writable
            )
            for acc in self.accounts
        ]
        try:
            data = base64.b64decode(self.data) if self.data else b""
        except Exception as e:
            raise ValueError(f"Failed to decode instruction data: {e}") from e
        return Instruction(program_id=program_id, accounts=accounts, data=data)


@dataclass
class JupiterSwapInstructionsResponse:
    """Swap instructions response from Jupiter API."""
    setup_instructions: List[SwapInstruction]
    swap_instruction: SwapInstruction
    cleanup_instruction: Optional[SwapInstruction]
    address_lookup_tables: List[str]  # ALT addresses
    last_valid_block_height: int
    compute_budget_instructions: List[SwapInstruction] = field(default_factory=list)
    priority_fee_lamports: Optional[int] = None

    def setup(self) -> List[Instruction]:
        return [ix.to_instruction() for ix in self.setup_instructions]

    def swap(self) -> List[Instruction]:
        """Compute-budget directives first, then the swap itself."""
        return [ix.to_instruction() for ix in self.compute_budget_instructions] + [
            self.swap_instruction.to_instruction()
        ]

    def cleanup(self) -> List[Instruction]:
        return [self.cleanup_instruction.to_instruction()] if self.cleanup_instruction else []


class JupiterClient:
    """Client for Jupiter Aggregator API with deterministic fallback."""

    # Public endpoints (no authentication required) - ordered by preference
    PUBLIC_ENDPOINTS = [
        "https://lite-api.jup.ag",
    ]

    # Authenticated endpoints (require API key) - ordered by preference
    AUTH_ENDPOINTS = [
        "https://api.jup.ag",
    ]

    SWAP_INSTRUCTION_PATHS = [
        "/swap/v1/swap-instructions",
        "/swap-instructions",
    ]

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        requests_per_second: float = 1.0,
        max_retries_on_429: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0
    ):
        """
        Initialize Jupiter API client.

        Args:
            api_url: Explicit API URL (overrides fallback). If None, uses fallback list.
            api_key: Jupiter API key, sent as x-api-key.
            timeout: Request timeout in seconds.
            requests_per_second: Rate limit for Jupiter API requests (default: 1.0 req/sec)
            max_retries_on_429: Maximum retries on 429 rate limit error (default: 3)
            backoff_base_seconds: Base backoff time for 429 retries (default: 1.0)
            backoff_max_seconds: Maximum backoff time for 429 retries (default: 30.0)
        """
        if api_url:
            self.api_url = api_url.rstrip('/')
            self.fallback_endpoints = []
        else:
            self.api_url = None
            if api_key:
                self.fallback_endpoints = self.AUTH_ENDPOINTS.copy()
            else:
                self.fallback_endpoints = self.PUBLIC_ENDPOINTS.copy()

        self.api_key = api_key
        self.timeout = timeout

        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)
        self.max_retries_on_429 = max_retries_on_429
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

        headers = {}
        if api_key:
            headers["x-api-key"] = api_key

        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)
        self._tried_endpoints = set()  # endpoints that returned 401 or hard errors
        self._working_endpoint = None
        self._working_swap_endpoint = None

    @staticmethod
    def _base_url(endpoint: str) -> str:
        base_url = endpoint.rstrip('/')
        for suffix in ('/v6', '/v1'):
            if base_url.endswith(suffix):
                base_url = base_url[:-len(suffix)]
        return base_url

    def _backoff_seconds(self, response: httpx.Response, attempt: int) -> float:
        """Wait time after a 429: Retry-After if present, else capped exponential."""
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)

    def _quote_endpoints(self) -> List[str]:
        endpoints_to_try = []
        if self._working_endpoint:
            endpoints_to_try.append(self._working_endpoint)
        if self.api_url and self.api_url not in endpoints_to_try:
            endpoints_to_try.append(self.api_url)
        for endpoint in self.fallback_endpoints:
            if endpoint not in endpoints_to_try and endpoint not in self._tried_endpoints:
                endpoints_to_try.append(endpoint)
        return endpoints_to_try

    async def _try_get_quote_from_endpoint(
        self,
        endpoint: str,
        params: Dict[str, Any]
    ) -> Tuple[Optional[JupiterQuote], Optional[str]]:
        """
        Try to get quote from a specific endpoint.

        Returns:
            (quote, error_type) where error_type is:
            - None: success
            - 'dns': DNS/connection error (can try next endpoint)
            - '404': No route for the pair
            - '429': Still rate limited after retries
            - '401': Unauthorized (endpoint requires auth, don't retry)
            - 'other': Other error (don't retry)
        """
        await self.rate_limiter.acquire()

        url = f"{self._base_url(endpoint)}/swap/v1/quote"
        start_time = time.time()

        for attempt in range(self.max_retries_on_429 + 1):
            try:
                response = await self.client.get(url, params=params)
                response.raise_for_status()
                data = response.json()

                quote = JupiterQuote(
                    input_mint=data.get("inputMint", params["inputMint"]),
                    output_mint=data.get("outputMint", params["outputMint"]),
                    in_amount=int(data.get("inAmount", params["amount"])),
                    out_amount=int(data.get("outAmount", 0)),
                    price_impact_pct=float(data.get("priceImpactPct", 0)),
                    route_plan=data.get("routePlan", []),
                    context_slot=data.get("contextSlot"),
                    time_taken=time.time() - start_time,
                    raw=data
                )

                self._working_endpoint = endpoint
                logger.debug(f"Quote from {endpoint}: {params['inputMint'][:8]}... -> {params['outputMint'][:8]}... "
                             f"in={quote.in_amount} out={quote.out_amount} dexes={quote.dex_labels}")
                return quote, None

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code == 429:
                    if attempt < self.max_retries_on_429:
                        wait_time = self._backoff_seconds(e.response, attempt)
                        logger.warning(
                            f"Rate limit exceeded (429) from {endpoint}, "
                            f"retrying in {wait_time:.1f}s (attempt {attempt + 1}/{self.max_retries_on_429})"
                        )
                        await asyncio.sleep(wait_time)
                        continue
                    logger.error(f"Rate limit exceeded (429) from {endpoint} after {self.max_retries_on_429} retries")
                    return None, '429'

                if status_code == 401:
                    self._tried_endpoints.add(endpoint)
                    if self.api_key:
                        logger.error(f"Endpoint {endpoint} returned 401 even with API key. Key may be invalid.")
                    else:
                        logger.warning(f"Endpoint {endpoint} requires authentication (401). No API key provided.")
                    return None, '401'
                if status_code in (400, 404):
                    # No route for this pair (or all its DEXes excluded)
                    logger.debug(f"No route for {params['inputMint'][:8]}... -> {params['outputMint'][:8]}... ({status_code})")
                    return None, '404'

                self._tried_endpoints.add(endpoint)
                logger.warning(f"Jupiter quote failed from {endpoint}: {status_code} - {e.response.text}")
                return None, 'other'

            except httpx.TransportError as e:
                logger.debug(f"Transport error for {endpoint} (DNS/network/timeout): {e}. Will try next endpoint if available.")
                return None, 'dns'

            except Exception as e:
                self._tried_endpoints.add(endpoint)
                logger.error(f"Unexpected error getting quote from {endpoint}: {e}")
                return None, 'other'

        return None, '429'

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        only_direct_routes: bool = False,
        exclude_dexes: Optional[List[str]] = None
    ) -> Optional[JupiterQuote]:
        """
        Get the best quote for swapping tokens with deterministic fallback.

        Tries the working endpoint, then the explicit api_url, then the
        fallback endpoints. Does not retry endpoints that returned 401.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit
            slippage_bps: Slippage in basis points (1 bps = 0.01%)
            only_direct_routes: Only return direct routes
            exclude_dexes: AMM labels the route must not use

        Returns:
            JupiterQuote or None if no endpoint produced a route
        """
        params = {
            "inputMint": str(input_mint),
            "outputMint": str(output_mint),
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "onlyDirectRoutes": str(only_direct_routes).lower(),
            "restrictIntermediateTokens": "false"
        }
        if exclude_dexes:
            params["excludeDexes"] = ",".join(exclude_dexes)

        endpoints_to_try = self._quote_endpoints()
        for endpoint in endpoints_to_try:
            quote, error_type = await self._try_get_quote_from_endpoint(endpoint, params)
            if quote is not None:
                return quote
            if error_type == '404':
                # A valid answer: no route. Other endpoints would say the same.
                return None

        if not endpoints_to_try:
            logger.error("No Jupiter API endpoints available to try")
        else:
            logger.warning(f"All Jupiter quote endpoints exhausted. Tried: {len(endpoints_to_try)} endpoints.")
        return None

    async def get_route_quotes(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        take_routes: int = 1
    ) -> List[JupiterQuote]:
        """
        Sample up to take_routes distinct routes, best first.

        The first quote is unrestricted; each later one excludes every DEX
        used by the routes before it. Sampling stops early when no route is
        left.
        """
        quotes: List[JupiterQuote] = []
        excluded: List[str] = []
        while len(quotes) < take_routes:
            quote = await self.get_quote(
                input_mint,
                output_mint,
                amount,
                slippage_bps=slippage_bps,
                exclude_dexes=list(excluded) or None
            )
            if quote is None:
                break
            quotes.append(quote)
            new_labels = [label for label in quote.dex_labels if label not in excluded]
            if not new_labels:
                break
            excluded.extend(new_labels)
        return quotes

    def _parse_accounts(self, accounts_data: Union[List[str], List[Dict[str, Any]]]) -> List[SwapAccountMeta]:
        """
        Parse accounts from Jupiter API response.

        Raises:
            NotImplementedError: If accounts are in string format (missing meta flags)
            ValueError: If an entry is neither a string nor an object
        """
        if not accounts_data:
            return []

        if isinstance(accounts_data[0], str):
            raise NotImplementedError(
                "Accounts are in string format (missing isSigner/isWritable flags). "
                "Cannot build Solana Instruction objects."
            )

        parsed_accounts = []
        for account_data in accounts_data:
            if not isinstance(account_data, dict):
                raise ValueError(f"Unexpected account format: {type(account_data)}")
            parsed_accounts.append(SwapAccountMeta(
                pubkey=account_data.get("pubkey", ""),
                is_signer=account_data.get("isSigner", False),
                is_writable=account_data.get("isWritable", False)
            ))
        return parsed_accounts

    def _parse_instruction(self, instr_data: Dict[str, Any]) -> SwapInstruction:
        return SwapInstruction(
            program_id=instr_data.get("programId", ""),
            accounts=self._parse_accounts(instr_data.get("accounts", [])),
            data=instr_data.get("data", "")
        )

    def _parse_swap_instructions(
        self,
        data: Dict[str, Any],
        priority_fee_lamports: int
    ) -> JupiterSwapInstructionsResponse:
        compute_budget = [self._parse_instruction(ix) for ix in data.get("computeBudgetInstructions") or []]
        for ix in compute_budget:
            if ix.program_id != COMPUTE_BUDGET_PROGRAM_ID:
                raise ValueError(f"Unexpected program in computeBudgetInstructions: {ix.program_id}")

        cleanup_data = data.get("cleanupInstruction")
        raw_alts = data.get("addressLookupTableAddresses") or data.get("addressLookupTables") or []
        address_lookup_tables: List[str] = []
        for x in raw_alts:
            if isinstance(x, str) and x not in address_lookup_tables:
                address_lookup_tables.append(x)

        return JupiterSwapInstructionsResponse(
            setup_instructions=[self._parse_instruction(ix) for ix in data.get("setupInstructions") or []],
            swap_instruction=self._parse_instruction(data["swapInstruction"]),
            cleanup_instruction=self._parse_instruction(cleanup_data) if cleanup_data else None,
            address_lookup_tables=address_lookup_tables,
            last_valid_block_height=data.get("lastValidBlockHeight", 0),
            compute_budget_instructions=compute_budget,
            priority_fee_lamports=priority_fee_lamports
        )

    def _get_swap_endpoints_to_try(self) -> List[str]:
        endpoints_to_try = []
        for endpoint in (self._working_swap_endpoint, self._working_endpoint, self.api_url):
            if endpoint and endpoint not in endpoints_to_try:
                endpoints_to_try.append(endpoint)
        if not self.api_url:
            preferred = self.AUTH_ENDPOINTS + self.PUBLIC_ENDPOINTS if self.api_key \
                else self.PUBLIC_ENDPOINTS + self.AUTH_ENDPOINTS
            for endpoint in preferred:
                if endpoint not in endpoints_to_try and endpoint not in self._tried_endpoints:
                    endpoints_to_try.append(endpoint)
        return endpoints_to_try

    async def get_swap_instructions(
        self,
        quote: JupiterQuote,
        user_public_key: str,
        priority_fee_lamports: int = 0,
        wrap_unwrap_sol: bool = False,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    ) -> Optional[JupiterSwapInstructionsResponse]:
        """
        Get the swap instruction bundle for a quote.

        Args:
            quote: JupiterQuote object
            user_public_key: User's public key (base58)
            priority_fee_lamports: Priority fee ceiling in lamports (0 = none)
            wrap_unwrap_sol: Let Jupiter wrap/unwrap SOL around the swap
            slippage_bps: Slippage used when the quote has no raw response

        Returns:
            JupiterSwapInstructionsResponse, or None if every endpoint/path failed
        """
        payload = {
            "quoteResponse": quote.to_request_payload(slippage_bps),
            "userPublicKey": str(user_public_key),
            "wrapAndUnwrapSol": wrap_unwrap_sol,
            "dynamicComputeUnitLimit": True,
            "useSharedAccounts": False
        }
        if priority_fee_lamports > 0:
            payload["prioritizationFeeLamports"] = {
                "priorityLevelWithMaxLamports": {"maxLamports": priority_fee_lamports, "priorityLevel": "high"}
            }

        endpoints_to_try = self._get_swap_endpoints_to_try()
        if not endpoints_to_try:
            logger.error("No Jupiter API endpoint available for swap instructions")
            return None

        failures: Dict[str, int] = {}
        for endpoint in endpoints_to_try:
            base_url = self._base_url(endpoint)
            for path in self.SWAP_INSTRUCTION_PATHS:
                swap_url = f"{base_url}{path}"
                for attempt in range(self.max_retries_on_429 + 1):
                    try:
                        await self.rate_limiter.acquire()
                        response = await self.client.post(swap_url, json=payload)
                        response.raise_for_status()
                        data = response.json()

                        if "swapInstruction" not in data:
                            failures['no swapInstruction'] = failures.get('no swapInstruction', 0) + 1
                            logger.debug(f"{swap_url} returned no swapInstruction, trying next path")
                            break

                        bundle = self._parse_swap_instructions(data, priority_fee_lamports)
                        self._working_swap_endpoint = endpoint
                        logger.debug(
                            f"Swap instructions OK via {swap_url}: "
                            f"{len(bundle.compute_budget_instructions)} compute budget, "
                            f"{len(bundle.setup_instructions)} setup, 1 swap, "
                            f"{1 if bundle.cleanup_instruction else 0} cleanup"
                        )
                        return bundle

                    except httpx.HTTPStatusError as e:
                        status_code = e.response.status_code
                        if status_code == 429 and attempt < self.max_retries_on_429:
                            wait_time = self._backoff_seconds(e.response, attempt)
                            logger.warning(
                                f"Rate limit exceeded (429) for swap instructions from {swap_url}, "
                                f"retrying in {wait_time:.1f}s (attempt {attempt + 1}/{self.max_retries_on_429})"
                            )
                            await asyncio.sleep(wait_time)
                            continue
                        if status_code == 401:
                            self._tried_endpoints.add(endpoint)
                        failures[str(status_code)] = failures.get(str(status_code), 0) + 1
                        logger.debug(f"Path {path} on {endpoint} returned {status_code}, trying next path")
                        break
                    except httpx.HTTPError as e:
                        failures['network'] = failures.get('network', 0) + 1
                        logger.debug(f"HTTP error with {swap_url}: {e}, trying next path")
                        break
                    except (KeyError, ValueError, NotImplementedError) as e:
                        failures['parse'] = failures.get('parse', 0) + 1
                        logger.debug(f"Malformed swap instructions from {swap_url}: {e}")
                        break

        summary = ", ".join(f"{reason}({count})" for reason, count in failures.items()) or "unknown reasons"
        logger.error(f"All Jupiter API endpoints/paths failed for swap instructions: {summary}")
        return None

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

#!/usr/bin/env python3
"""
Futuur API MCP Server - FastMCP over the Futuur prediction-market REST API

Uses FastMCP from the official MCP SDK. Every tool builds a request through
FutuurClient, which signs calls to non-public endpoints with the
Key/Timestamp/HMAC headers and returns the parsed JSON response.

Architecture:
- FastMCP for tool decorators and argument validation
- FutuurClient (futuur_client.py) for request building, signing and transport
- Streamable HTTP app (/mcp) with CORS and a /health route, or stdio

API: https://api.futuur.com/api/v1/

Environment Variables:
- FUTUUR_PUBLIC_KEY: Futuur API public key
- FUTUUR_PRIVATE_KEY: Futuur API private (signing) key
- FUTUUR_API_BASE_URL: API root (default: https://api.futuur.com/api/v1/)
- FUTUUR_PUBLIC_PREFIXES: Comma separated unsigned endpoint prefixes
- FUTUUR_TIMEOUT: Request timeout in seconds (default: 30)
- MCP_TRANSPORT: "streamable-http" (default) or "stdio"
- PORT: HTTP port (default: 8000)
- LOG_LEVEL: Logging level (default: INFO)
"""

import os
import logging
import json
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional
from datetime import datetime

from dotenv import load_dotenv
import uvicorn
from babel.core import UnknownLocaleError
from babel.numbers import format_decimal
from pydantic import BaseModel, Field

load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('futuur-api_mcp')

# FastMCP from official SDK
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from futuur_auth import CredentialStore, FutuurError
from futuur_client import FutuurClient

# Configuration
PORT = int(os.getenv("PORT", "8000"))
MCP_TRANSPORT = os.getenv("MCP_TRANSPORT", "streamable-http").lower()

credential_store = CredentialStore()
futuur = FutuurClient.from_env(credential_store)

logger.info("="*80)
logger.info("Futuur API MCP Server (FastMCP)")
logger.info(f"API: {futuur.base_url}")
logger.info(f"Public prefixes: {', '.join(futuur.public_prefixes)}")
logger.info(f"Credentials: {'✅ Set' if credential_store.is_configured() else '❌ Not set'}")
logger.info("="*80)

# Create FastMCP server
mcp = FastMCP("Futuur API MCP Server", host="0.0.0.0", port=PORT)

logger.info("✅ FastMCP server created")


# ============================================================================
# RESULT RENDERING
# ============================================================================

def render(data: Any) -> str:
    """Render an API response as the tool's text payload."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def render_error(action: str, error: Exception) -> str:
    """Render a failed call as the tool's text payload."""
    logger.error(f"Error {action}: {error}")
    return f"Error {action}: {error}"


def find_rates(rates: Any, currency: str) -> Dict[str, Any]:
    """Pick the rate table for ``currency`` out of the bets/rates/ response."""
    if isinstance(rates, list):
        for entry in rates:
            if isinstance(entry, dict) and entry.get("currency") == currency:
                return entry
    raise ValueError(f"Rates for {currency} not found")


def usd_rate(rates: Any, currency: str) -> float:
    """Value of one unit of ``currency`` in USD."""
    table = find_rates(rates, "USD").get("rates") or {}
    if currency not in table or not table[currency]:
        raise ValueError(f"No USD rate for {currency}")
    return 1 / float(table[currency])


# ============================================================================
# MARKET TOOLS
# ============================================================================

@mcp.tool()
async def get_markets(
    categories: Optional[List[int]] = None,
    currency_mode: Literal["play_money", "real_money"] = "play_money",
    hide_my_bets: bool = False,
    limit: Optional[int] = None,
    live: bool = False,
    offset: Optional[int] = None,
    only_markets_i_follow: bool = False,
    ordering: Literal["", "relevance", "-created_on", "bet_end_date", "-wagers_count", "-volume"] = "",
    resolved_only: bool = False,
    search: Optional[Annotated[str, Field(min_length=1, max_length=100)]] = None,
    tag: Optional[Annotated[str, Field(min_length=1, max_length=100)]] = None,
    status: Optional[Literal["open", "closed", "resolved"]] = None,
) -> str:
    """
    Get Futuur markets with optional filtering and pagination.

    API endpoint: GET /markets/

    Args:
        categories: Array of category IDs to filter markets (optional)
        currency_mode: Currency mode: play_money or real_money (optional, default: "play_money")
        hide_my_bets: Whether to hide markets the user has bet on (optional, default: False)
        limit: Number of results to return per page (optional)
        live: Filter for live markets only (optional, default: False)
        offset: The initial index from which to return the results (optional)
        only_markets_i_follow: Filter for markets the user follows (optional, default: False)
        ordering: Field to order results by (optional)
        resolved_only: Filter for resolved markets only (optional, default: False)
        search: Search query string (optional)
        tag: Filter markets by tag (optional)
        status: Filter markets by status: open, closed or resolved (optional)

    Returns:
        JSON text with the paginated market list

    Example Usage:
        await get_markets(categories=[5, 12], ordering="-volume", limit=20)
    """
    params = {
        "categories": categories or None,
        "currency_mode": currency_mode,
        "hide_my_bets": hide_my_bets,
        "limit": limit,
        "live": live,
        "offset": offset,
        "only_markets_i_follow": only_markets_i_follow,
        "ordering": ordering or None,
        "resolved_only": resolved_only,
        "search": search,
        "tag": tag,
        "status": status,
    }
    try:
        return render(await futuur.get("markets/", params))
    except FutuurError as e:
        return render_error("fetching markets", e)


@mcp.tool()
async def get_market_details(id: int) -> str:
    """
    Get details of a single market, including its outcomes and prices.

    API endpoint: GET /markets/{id}/

    Args:
        id: A unique integer value identifying this market (required)
    """
    try:
        return render(await futuur.get(f"markets/{id}/"))
    except FutuurError as e:
        return render_error("fetching market details", e)


@mcp.tool()
async def get_related_markets(id: int) -> str:
    """
    Get markets related to the given market.

    API endpoint: GET /markets/{id}/related_markets/

    Args:
        id: A unique integer value identifying this market (required)
    """
    try:
        return render(await futuur.get(f"markets/{id}/related_markets/"))
    except FutuurError as e:
        return render_error("fetching related markets", e)


class OutcomeSuggestion(BaseModel):
    title: str = Field(description="Title of the outcome")
    price: float = Field(ge=0, le=100, description="Price of the outcome (0-100, all prices should add up to 100)")
    description: Optional[str] = Field(default=None, description="Description of the outcome")


@mcp.tool()
async def suggest_market(
    title: Annotated[str, Field(min_length=1, max_length=150)],
    description: Annotated[str, Field(min_length=1, max_length=800)],
    outcomes: Annotated[List[OutcomeSuggestion], Field(min_length=2)],
    category: Optional[Annotated[str, Field(min_length=1, max_length=75)]] = None,
    end_bet_date: Optional[str] = None,
) -> str:
    """
    Suggest a new market to Futuur.

    API endpoint: POST /markets/suggest_market/

    Args:
        title: Title of the market (required)
        description: Description of the market (required)
        outcomes: Possible outcomes, at least two; prices must add up to 100 (required)
        category: Category of the market (optional)
        end_bet_date: End date for betting in format YYYY-MM-DDTHH:MM:SSZ (optional)
    """
    try:
        price_sum = sum(o.price for o in outcomes)
        if abs(price_sum - 100) > 0.01:
            raise ValueError(f"Outcome prices must sum to 100, but they sum to {price_sum:g}")

        body: Dict[str, Any] = {
            "title": title,
            "description": description,
            "outcomes": [o.model_dump(exclude_none=True) for o in outcomes],
        }
        if category is not None:
            body["category"] = category
        if end_bet_date is not None:
            body["end_bet_date"] = end_bet_date

        return render(await futuur.post("markets/suggest_market/", body))
    except (FutuurError, ValueError) as e:
        return render_error("suggesting market", e)


# ============================================================================
# CATEGORY TOOLS
# ============================================================================

@mcp.tool()
async def get_categories() -> str:
    """
    Get all available market categories in Futuur.

    API endpoint: GET /categories/

    Use get_category_by_id for the details of a single category.
    """
    try:
        return render(await futuur.get("categories/"))
    except FutuurError as e:
        return render_error("fetching categories", e)


@mcp.tool()
async def get_category_by_id(id: int) -> str:
    """
    Get a single category by ID.

    API endpoint: GET /categories/{id}/

    Args:
        id: A unique integer value identifying this category (required)
    """
    try:
        return render(await futuur.get(f"categories/{id}/"))
    except FutuurError as e:
        return render_error(f"fetching category with ID {id}", e)


@mcp.tool()
async def get_featured_categories() -> str:
    """Get the featured categories. API endpoint: GET /categories/featured/"""
    try:
        return render(await futuur.get("categories/featured/"))
    except FutuurError as e:
        return render_error("fetching featured categories", e)


@mcp.tool()
async def get_root_categories() -> str:
    """Get the top-level categories. API endpoint: GET /categories/root/"""
    try:
        return render(await futuur.get("categories/root/"))
    except FutuurError as e:
        return render_error("fetching root categories", e)


@mcp.tool()
async def get_root_categories_and_main_children(
    currency_mode: Literal["play_money", "real_money"],
    search: Optional[str] = None,
) -> str:
    """
    Get the root categories together with their main children.

    API endpoint: GET /categories/root_and_main_children/

    Args:
        currency_mode: Currency mode: play_money or real_money (required)
        search: Optional search term to filter categories (optional)
    """
    try:
        return render(await futuur.get(
            "categories/root_and_main_children/",
            {"currency_mode": currency_mode, "search": search or None},
        ))
    except FutuurError as e:
        return render_error("fetching root categories and main children", e)


# ============================================================================
# USER TOOLS
# ============================================================================

@mcp.tool()
async def get_user_profile() -> str:
    """
    Retrieve the profile of the authenticated user.

    API endpoint: GET /me/ (signed)

    Only the profile of the user owning the configured API keys can be read;
    profiles cannot be updated through this tool.
    """
    try:
        return render(await futuur.get("me/"))
    except FutuurError as e:
        return render_error("fetching user profile", e)


# ============================================================================
# BET TOOLS
# ============================================================================

@mcp.tool()
async def get_user_bets(
    limit: int,
    offset: int,
    currency_mode: Literal["play_money", "real_money", ""],
    active: Optional[bool] = None,
    following: Optional[bool] = None,
    past_bets: Optional[bool] = None,
    question: Optional[int] = None,
    user: Optional[int] = None,
) -> str:
    """
    Get bets of the authenticated user with optional filtering.

    API endpoint: GET /bets/ (signed)

    Args:
        limit: Maximum number of bets to return (required)
        offset: Offset for pagination (required)
        currency_mode: Filter by currency mode; "" for all (required)
        active: Filter by active wagers (status purchased) (optional)
        following: Filter by bets made by users you follow (optional)
        past_bets: Filter by finished wagers (sold, won, lost, disabled) (optional)
        question: Filter by question ID (optional)
        user: Filter by user ID (optional)
    """
    params = {
        "limit": limit,
        "offset": offset,
        "active": active,
        "currency_mode": currency_mode,
        "following": following,
        "past_bets": past_bets,
        "question": question,
        "user": user,
    }
    try:
        return render(await futuur.get("bets/", params))
    except FutuurError as e:
        return render_error("fetching user bets", e)


@mcp.tool()
async def get_bet_simulation(
    outcome: int,
    currency: Annotated[str, Field(max_length=11)] = "OOM",
    position: Literal["l", "s"] = "l",
    amount: Optional[Annotated[float, Field(gt=0)]] = None,
    shares: Optional[Annotated[float, Field(gt=0)]] = None,
) -> str:
    """
    Simulate a bet purchase on a market outcome without placing it.

    API endpoint: GET /bets/simulate_purchase/ (signed)

    Previews the cost of a number of shares, or the shares bought for an
    amount. Provide exactly one of amount or shares; the API fills in the
    other. Use this before place_bet to show the user what they will get.

    Args:
        outcome: ID of the market outcome to simulate a bet on (required)
        currency: Currency for the simulation, e.g. 'OOM', 'USD' (optional, default: "OOM")
        position: 'l' for long (in favor), 's' for short (against) (optional, default: "l")
        amount: Monetary amount to simulate spending (optional)
        shares: Number of shares to simulate purchasing (optional)
    """
    try:
        if amount is None and shares is None:
            raise ValueError("Either 'amount' or 'shares' must be provided for the simulation")
        if amount is not None and shares is not None:
            raise ValueError("Provide either 'amount' or 'shares' for the simulation, not both")
        return render(await futuur.simulate_purchase(outcome, currency, position, amount, shares))
    except (FutuurError, ValueError) as e:
        return render_error("simulating bet purchase", e)


@mcp.tool()
async def place_bet(
    outcome: int,
    amount: Optional[Annotated[float, Field(gt=0)]] = None,
    shares: Optional[Annotated[float, Field(gt=0)]] = None,
    currency: Annotated[str, Field(max_length=11)] = "OOM",
    position: Literal["l", "s"] = "l",
    outcomes_type: Optional[Literal["yesno", "custom"]] = None,
) -> str:
    """
    Place a bet on a market outcome.

    API endpoints: GET /bets/simulate_purchase/, then POST /bets/ (both signed)

    The purchase is simulated first and the simulation result is submitted as
    the bet, so the order matches the previewed price. This spends real
    balance; confirm with the user before calling.

    Args:
        outcome: ID of the outcome to bet on (required)
        amount: Amount to bet; provide this or shares (optional)
        shares: Number of shares to purchase; provide this or amount (optional)
        currency: Currency to use for the bet (optional, default: "OOM")
        position: 'l' for long (in favor) or 's' for short (against) (optional, default: "l")
        outcomes_type: Type of market outcomes; yes/no markets only accept 'l' (optional)
    """
    try:
        if amount is None and shares is None:
            raise ValueError("Either amount or shares must be provided")
        if outcomes_type == "yesno" and position != "l":
            raise ValueError("Position must be 'l' (long) for yes/no markets")

        simulation = await futuur.simulate_purchase(outcome, currency, position, amount, shares)
        logger.info(f"Placing bet on outcome {outcome} ({position}, {currency}) from simulation")
        return render(await futuur.post("bets/", simulation))
    except (FutuurError, ValueError) as e:
        return render_error("placing bet", e)


@mcp.tool()
async def sell_bet(
    id: int,
    shares: Optional[Annotated[float, Field(gt=0)]] = None,
    amount: Optional[Annotated[float, Field(gt=0)]] = None,
) -> str:
    """
    Sell a bet, fully or partially.

    API endpoint: PATCH /bets/{id}/ (signed)

    Without shares or amount the whole position is sold.

    Args:
        id: ID of the bet to sell (required)
        shares: Number of shares to sell, for a partial sell (optional)
        amount: Amount to receive, for a partial sell (optional)
    """
    body: Dict[str, float] = {}
    if shares is not None:
        body["shares"] = shares
    if amount is not None:
        body["amount"] = amount
    try:
        return render(await futuur.patch(f"bets/{id}/", body or None))
    except FutuurError as e:
        return render_error("selling bet", e)


def find_by_ref(items: Any, ref: Any) -> Optional[Dict[str, Any]]:
    """Find the entry whose id or title matches a wager's event/market reference."""
    for item in items or []:
        if isinstance(item, dict) and (str(item.get("id")) == str(ref) or item.get("title") == ref):
            return item
    return None


@mcp.tool()
async def get_partial_sell_amount(
    id: int,
    shares: Annotated[float, Field(gt=0)],
    currency_mode: Optional[Literal["play_money", "real_money"]] = None,
) -> str:
    """
    Estimate what partially selling a wager would return, without selling.

    API endpoints: GET /wagers/{id}/ (signed), GET /events/,
    GET /events/{id}/order_book/

    The estimate is shares times the best bid in the order book of the
    wager's market. Actual proceeds may differ once the order is placed;
    use sell_bet to execute the sale.

    Args:
        id: ID of the wager (required)
        shares: Number of shares to sell (required)
        currency_mode: play_money or real_money; derived from the wager currency when omitted (optional)
    """
    try:
        wager = await futuur.get(f"wagers/{id}/")
        if not wager:
            raise ValueError("Wager not found")
        currency = wager.get("currency") or "OOM"
        mode = currency_mode or ("play_money" if currency == "OOM" else "real_money")

        events = await futuur.get("events/", {"limit": 100})
        event = find_by_ref(events.get("results") if isinstance(events, dict) else events, wager.get("event"))
        if event is None:
            raise ValueError("Could not find the event for this wager")
        market = find_by_ref(event.get("markets"), wager.get("market"))
        if market is None:
            raise ValueError("Could not find the market for this wager")

        order_book = await futuur.get(f"events/{event['id']}/order_book/", {
            "market": market["id"],
            "currency_mode": mode,
            "position": wager.get("position") or "l",
        })
        bids = order_book.get("bid") or []
        if not bids:
            raise ValueError("No buyers in the order book, cannot estimate the sell amount")

        best_bid = bids[0]["price"]
        return render({
            "wager_id": id,
            "shares": shares,
            "estimated_amount": shares * best_bid,
            "price_per_share": best_bid,
            "currency": currency,
            "currency_mode": mode,
            "note": "Estimate based on current order book prices; the actual amount may vary when the order is placed.",
        })
    except (FutuurError, ValueError) as e:
        return render_error("getting partial sell amount", e)


@mcp.tool()
async def get_rates() -> str:
    """Get current currency rates. API endpoint: GET /bets/rates/ (signed)"""
    try:
        return render(await futuur.get("bets/rates/"))
    except FutuurError as e:
        return render_error("getting rates", e)


# ============================================================================
# FINANCE TOOLS
# ============================================================================

@mcp.tool()
async def get_exchange_rates(base_currency: Optional[str] = None) -> str:
    """
    Get current exchange rates, optionally only those of one base currency.

    API endpoint: GET /bets/rates/ (signed)

    Args:
        base_currency: Base currency to filter rates, e.g. 'USD' (optional)
    """
    try:
        rates = await futuur.get("bets/rates/")
        if base_currency:
            return render(find_rates(rates, base_currency))
        return render(rates)
    except (FutuurError, ValueError) as e:
        return render_error("getting exchange rates", e)


@mcp.tool()
async def convert_from_usd(
    value: Annotated[float, Field(gt=0)],
    to_currency: str,
) -> str:
    """
    Convert an amount in USD to another currency using Futuur's rates.

    Args:
        value: Amount in USD to convert (required)
        to_currency: Target currency code, e.g. 'BTC', 'EUR' (required)
    """
    try:
        rates = await futuur.get("bets/rates/")
        rate = usd_rate(rates, to_currency)
        if to_currency == "BTC":
            # Futuur quotes BTC amounts in mBTC
            rate = rate / 1000
        return render({
            "from_amount": value,
            "from_currency": "USD",
            "to_amount": value / rate,
            "to_currency": to_currency,
            "rate": rate,
        })
    except (FutuurError, ValueError) as e:
        return render_error("converting from USD", e)


@mcp.tool()
async def convert_to_usd(
    value: Annotated[float, Field(gt=0)],
    from_currency: str,
) -> str:
    """
    Convert an amount in another currency to USD using Futuur's rates.

    Args:
        value: Amount to convert to USD (required)
        from_currency: Source currency code (required)
    """
    try:
        rates = await futuur.get("bets/rates/")
        rate = usd_rate(rates, from_currency)
        return render({
            "from_amount": value,
            "from_currency": from_currency,
            "to_amount": value * rate,
            "to_currency": "USD",
            "rate": rate,
        })
    except (FutuurError, ValueError) as e:
        return render_error("converting to USD", e)


@mcp.tool()
async def format_number(
    value: float,
    locale: str = "en-US",
    min_decimals: Annotated[int, Field(ge=0)] = 2,
    max_decimals: Annotated[int, Field(ge=0)] = 2,
) -> str:
    """
    Format a number for display in the given locale.

    Args:
        value: Number to format (required)
        locale: Locale string, e.g. 'en-US', 'pt-BR' (optional, default: "en-US")
        min_decimals: Minimum decimal places (optional, default: 2)
        max_decimals: Maximum decimal places (optional, default: 2)
    """
    try:
        if max_decimals < min_decimals:
            raise ValueError("max_decimals must be greater than or equal to min_decimals")
        pattern = "#,##0"
        if max_decimals:
            pattern += "." + "0" * min_decimals + "#" * (max_decimals - min_decimals)
        return format_decimal(Decimal(str(value)), format=pattern, locale=locale.replace("-", "_"))
    except (UnknownLocaleError, ValueError) as e:
        return render_error("formatting number", e)


# ============================================================================
# APPLICATION SETUP WITH STARLETTE MIDDLEWARE
# ============================================================================

async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for container orchestration.

    Reports whether Futuur credentials are configured; signed tools fail
    until they are.
    """
    configured = credential_store.is_configured()
    return JSONResponse(
        status_code=200 if configured else 503,
        content={
            "status": "healthy" if configured else "unhealthy",
            "service": "futuur-api-mcp-server",
            "credentials_configured": configured,
            "api": futuur.base_url,
            "timestamp": datetime.now().isoformat()
        }
    )


def create_app_with_middleware():
    """
    Create the Starlette app serving MCP over streamable HTTP.

    1. Get FastMCP's Starlette app via streamable_http_app()
    2. Add CORS middleware exposing mcp-session-id
    3. Add the /health route
    """
    logger.info("🔧 Creating FastMCP app with middleware...")

    app = mcp.streamable_http_app()
    logger.info("✅ Got FastMCP Starlette app")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all methods
        allow_headers=["*"],  # Allow all headers
        expose_headers=["mcp-session-id"],  # Expose custom headers to browser
    )
    logger.info("✅ Added CORS middleware (allow all origins, expose mcp-session-id)")

    app.add_route("/health", health_check, methods=["GET"])
    logger.info("✅ Added /health endpoint")

    return app


if __name__ == "__main__":
    logger.info("="*80)
    logger.info(f"Starting Futuur API MCP Server ({MCP_TRANSPORT})")
    logger.info("="*80)

    if MCP_TRANSPORT == "stdio":
        mcp.run(transport="stdio")
    else:
        app = create_app_with_middleware()

        uvicorn.run(
            app,
            host="0.0.0.0",
            port=PORT,
            log_level=os.getenv("LOG_LEVEL", "info").lower()
        )

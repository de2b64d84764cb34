import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from concierge_core.config.settings import settings
from concierge_core.domain.exceptions import ToolExecutionError
from concierge_core.infrastructure.logging.logger import logger
from .definitions import ToolDef, ToolParam


ToolFunc = Callable[[Dict[str, Any]], Awaitable[Any]]
INFO_TYPES = ("reviews", "hours", "neighborhood", "general")


class ToolRegistry:
    """工具名 -> 可执行函数 + 声明的参数 schema。

    dispatch 是唯一入口，且永远不会向外抛异常：未知工具、缺少必填参数、
    工具内部异常都会被转换为 {"error": "..."} 结果，交给模型自行调整。
    """

    def __init__(self, tools: Optional[Dict[str, ToolFunc]] = None, tool_defs: Optional[List[ToolDef]] = None):
        self._tools: Dict[str, ToolFunc] = dict(tools or {})
        self._defs: Dict[str, ToolDef] = {d.name: d for d in (tool_defs or [])}

    def register(self, tool_def: ToolDef, func: ToolFunc) -> None:
        self._defs[tool_def.name] = tool_def
        self._tools[tool_def.name] = func

    def tool_defs(self) -> List[ToolDef]:
        return [d for name, d in self._defs.items() if name in self._tools]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]]) -> Any:
        func = self._tools.get(name)
        if func is None:
            return {"error": f"Unknown tool: {name}"}
        args = dict(arguments or {})
        tool_def = self._defs.get(name)
        if tool_def:
            missing = [p for p in tool_def.required_params() if args.get(p) in (None, "")]
            if missing:
                return {"error": f"Missing required parameter(s): {', '.join(missing)}"}
        try:
            return await func(args)
        except Exception as exc:
            logger.warning(
                "Tool raised",
                extra={"extra": {"tool_name": name, "error": str(exc), "error_type": type(exc).__name__}},
            )
            return {"error": str(exc) or type(exc).__name__}


def _make_determine_date_tool() -> ToolFunc:
    async def _run(args: Dict[str, Any]) -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    return _run


def build_search_query(args: Dict[str, Any]) -> Optional[str]:
    """根据结构化字段或自由查询拼出搜索语句；两者都没有时返回 None。"""

    restaurant = str(args.get("restaurant_name") or "").strip()
    if restaurant:
        parts = [restaurant]
        location = str(args.get("location") or "").strip()
        if location:
            parts.append(location)
        focus = str(args.get("info_type") or "general").strip().lower()
        if focus in INFO_TYPES and focus != "general":
            parts.append(focus)
        return " ".join(parts) + " restaurant NYC"
    query = str(args.get("query") or "").strip()
    return query or None


def _make_web_search_tool(cfg) -> ToolFunc:
    async def _run(args: Dict[str, Any]) -> Any:
        if not getattr(cfg, "exa_api_key", None):
            raise ToolExecutionError("Web search is not configured. EXA_API_KEY is not set.", code="MISSING_API_KEY")
        search_query = build_search_query(args)
        if not search_query:
            raise ToolExecutionError("Provide either restaurant_name or query.", code="INVALID_ARGUMENTS")
        payload = {
            "query": search_query,
            "type": "auto",
            "numResults": cfg.search_num_results,
            "contents": {"highlights": {"maxCharacters": cfg.search_highlight_chars}},
        }
        try:
            async with httpx.AsyncClient(timeout=cfg.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{cfg.exa_base_url}/search",
                    json=payload,
                    headers={"x-api-key": cfg.exa_api_key, "Content-Type": "application/json"},
                )
        except httpx.RequestError as e:
            raise ToolExecutionError(f"Exa search failed: {e}", code="NETWORK_ERROR")
        if resp.status_code >= 400:
            raise ToolExecutionError(f"Exa search failed: HTTP {resp.status_code}", code="API_ERROR")
        return resp.json().get("results", [])

    return _run


def _make_geocode_venues_tool(cfg) -> ToolFunc:
    async def _lookup(client: httpx.AsyncClient, venue: Any) -> Dict[str, Any]:
        if not isinstance(venue, dict) or not str(venue.get("name") or "").strip():
            return {"name": "", "error": "Missing venue name"}
        name = str(venue["name"]).strip()
        try:
            resp = await client.get(
                f"{cfg.mapbox_base_url}/search/searchbox/v1/forward",
                params={
                    "q": name,
                    "bbox": cfg.geocode_bbox,
                    "types": "poi",
                    "limit": 1,
                    "access_token": cfg.mapbox_access_token,
                },
            )
            if resp.status_code >= 400:
                return {"name": name, "error": f"HTTP {resp.status_code}"}
            features = resp.json().get("features") or []
        except (httpx.RequestError, json.JSONDecodeError) as e:
            return {"name": name, "error": str(e)}
        if not features:
            return {"name": name, "error": "Not found"}
        feature = features[0]
        lng, lat = feature["geometry"]["coordinates"][:2]
        return {
            "name": name,
            "lat": lat,
            "lng": lng,
            "address": (feature.get("properties") or {}).get("full_address"),
        }

    async def _run(args: Dict[str, Any]) -> Any:
        if not getattr(cfg, "mapbox_access_token", None):
            raise ToolExecutionError("MAPBOX_ACCESS_TOKEN is not set.", code="MISSING_API_KEY")
        venues = args.get("venues")
        if not isinstance(venues, list):
            raise ToolExecutionError("venues must be a list of {name, neighborhood}.", code="INVALID_ARGUMENTS")
        async with httpx.AsyncClient(timeout=cfg.http_timeout, trust_env=False) as client:
            return list(await asyncio.gather(*(_lookup(client, v) for v in venues)))

    return _run


def default_tools(cfg=None) -> Dict[str, ToolFunc]:
    cfg = cfg or settings
    return {
        "determine_date": _make_determine_date_tool(),
        "web_search": _make_web_search_tool(cfg),
        "geocode_venues": _make_geocode_venues_tool(cfg),
    }


def default_tool_defs() -> List[ToolDef]:
    return [
        ToolDef(
            name="determine_date",
            description=(
                "Use this tool to determine the current date, as well as what the user means by "
                "'next Friday', etc. This always returns the current date and time in UTC. Assume the "
                "user is in EST time (NYC). Mention this and use this date for reference."
            ),
            params={},
        ),
        ToolDef(
            name="web_search",
            description=(
                "Search the web for real-time restaurant details, reviews, hours, and neighborhood info. "
                "Use when the user wants to verify specifics about a restaurant or needs current "
                "information. Use also for guides / reviews that recommend a place to give it character."
            ),
            params={
                "restaurant_name": ToolParam(
                    name="restaurant_name",
                    description="Name of a specific restaurant to look up (e.g., 'L\\'Artusi', 'Dhamaka')",
                    required=False,
                    schema={"type": "string"},
                ),
                "location": ToolParam(
                    name="location",
                    description="Neighborhood or area to narrow the search (e.g., 'West Village', 'NYC')",
                    required=False,
                    schema={"type": "string"},
                ),
                "query": ToolParam(
                    name="query",
                    description=(
                        "Free-form search for broader discovery like curated lists, neighborhood guides, "
                        "or cuisine roundups (e.g., 'best new restaurants Lower East Side 2025')"
                    ),
                    required=False,
                    schema={"type": "string"},
                ),
                "info_type": ToolParam(
                    name="info_type",
                    description="What kind of information to focus on. Defaults to general.",
                    required=False,
                    schema={"type": "string", "enum": list(INFO_TYPES)},
                ),
            },
        ),
        ToolDef(
            name="geocode_venues",
            description=(
                "Resolve venue names to lat/lng via Mapbox so they can be shown on a map. Call this after "
                "discovering venues with web_search, when generating itineraries / user plans."
            ),
            params={
                "venues": ToolParam(
                    name="venues",
                    description="Venues to resolve",
                    required=True,
                    schema={
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "neighborhood": {"type": "string"},
                            },
                            "required": ["name"],
                        },
                    },
                ),
            },
        ),
    ]


def default_registry(cfg=None) -> ToolRegistry:
    return ToolRegistry(default_tools(cfg), default_tool_defs())

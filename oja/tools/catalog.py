from enum import Enum
from typing import Iterable, Optional

from loguru import logger
from pydantic import BaseModel, Field


class ToolKind(str, Enum):
    READ = "read"
    WRITE = "write"


class ToolSpec(BaseModel):
    """One callable backend operation exposed to the language model."""

    name: str
    description: str
    parameters: dict = Field(default_factory=lambda: {"type": "object", "properties": {}})
    kind: ToolKind = ToolKind.READ
    requires_confirmation: bool = False
    # Spoken when the call is held for confirmation; formatted with the call's arguments
    confirm_prompt: Optional[str] = None

    def describe_pending(self, arguments: dict) -> str:
        template = self.confirm_prompt or "Are you sure you want me to run {tool}?"
        return template.format_map(_DefaultArgs(arguments, tool=self.name.replace("_", " ")))


class _DefaultArgs(dict):
    def __init__(self, arguments: dict, **extra):
        super().__init__(arguments)
        self.update(extra)

    def __missing__(self, key):
        return "that"


class ToolCatalog:
    """Registry of tools the dispatcher may offer to the model.

    Tools can be added or removed at runtime without touching the session.
    """

    def __init__(self, tools: Iterable[ToolSpec] = ()):
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.requires_confirmation and tool.kind != ToolKind.WRITE:
            raise ValueError(f"Only write tools can require confirmation: {tool.name}")
        if tool.name in self._tools:
            logger.debug("Replacing tool definition '{}'", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def requires_confirmation(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.requires_confirmation)

    @property
    def tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def names(self, kind: Optional[ToolKind] = None) -> list[str]:
        return [t.name for t in self._tools.values() if kind is None or t.kind == kind]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def _object(properties: Optional[dict] = None, required: Optional[list[str]] = None) -> dict:
    schema = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


_STOCK_LEVEL = {
    "type": "string",
    "description": "Stock level",
    "enum": ["stocked", "low", "out"],
}


def _item_name(description: str = "The grocery item name") -> dict:
    return _object({"itemName": {"type": "string", "description": description}}, ["itemName"])


READ_TOOLS = [
    ToolSpec(
        name="get_pantry_items",
        description=(
            "Get the user's pantry items with stock levels, prices, and categories. "
            "Use when the user asks what they have, what's running low, or what they need to buy."
        ),
        parameters=_object({
            "stockFilter": {**_STOCK_LEVEL, "description": "Filter by stock level. Omit for all items."},
        }),
    ),
    ToolSpec(
        name="get_active_lists",
        description="Get all active and in-progress shopping lists.",
    ),
    ToolSpec(
        name="get_list_items",
        description="Get all items on a specific shopping list with prices, quantities, and checked status.",
        parameters=_object({"listId": {"type": "string", "description": "The ID of the shopping list"}}, ["listId"]),
    ),
    ToolSpec(
        name="get_price_estimate",
        description="Get the current best price estimate for a grocery item ('how much is X?').",
        parameters=_item_name("The grocery item name, e.g. 'milk', 'chicken breast'"),
    ),
    ToolSpec(
        name="get_price_stats",
        description=(
            "Get personal price history stats for an item (average, min, max, cheapest store). "
            "Use for 'where is X cheapest?'."
        ),
        parameters=_item_name(),
    ),
    ToolSpec(
        name="get_price_trend",
        description="Get whether an item's price is increasing, decreasing, or stable.",
        parameters=_item_name(),
    ),
    ToolSpec(
        name="get_weekly_digest",
        description="Get this week's spending summary: total spent, trips, budget saved, top categories.",
    ),
    ToolSpec(
        name="get_savings_jar",
        description="Get cumulative savings: total saved, trips count, next milestone progress.",
    ),
    ToolSpec(
        name="get_streaks",
        description="Get the user's activity streaks.",
    ),
    ToolSpec(
        name="get_achievements",
        description="Get all unlocked achievements and badges.",
    ),
    ToolSpec(
        name="get_item_variants",
        description="Get size variants with prices for an item (e.g. milk: 1pt, 2pt, 4pt).",
        parameters=_object({"baseItem": {"type": "string", "description": "Base item name, e.g. 'milk'"}}, ["baseItem"]),
    ),
    ToolSpec(
        name="get_monthly_trends",
        description="Get spending trends over the last 6 months with category breakdown and budget adherence.",
    ),
]

WRITE_TOOLS = [
    ToolSpec(
        name="create_shopping_list",
        kind=ToolKind.WRITE,
        description=(
            "Create a new shopping list. ONLY call this when you have the list name. "
            "If the user doesn't give a name, ask for one first."
        ),
        parameters=_object({
            "name": {"type": "string", "description": "List name, e.g. 'Aldi Shop'"},
            "budget": {"type": "number", "description": "Optional budget in GBP"},
            "storeName": {"type": "string", "description": "Optional store name, e.g. 'Tesco'"},
        }, ["name"]),
    ),
    ToolSpec(
        name="add_items_to_list",
        kind=ToolKind.WRITE,
        description=(
            "Add items to a shopping list. If the user has several lists and didn't say which, "
            "ask which one. If only one list is active, use it."
        ),
        parameters=_object({
            "listId": {"type": "string", "description": "Target list ID if known from context"},
            "listName": {"type": "string", "description": "Target list name for matching if no ID"},
            "items": {
                "type": "array",
                "items": _object({
                    "name": {"type": "string", "description": "Item name"},
                    "quantity": {"type": "number", "description": "Quantity, default 1"},
                    "unit": {"type": "string", "description": "Optional unit, e.g. 'pint', 'kg'"},
                }, ["name"]),
            },
        }, ["items"]),
    ),
    ToolSpec(
        name="update_stock_level",
        kind=ToolKind.WRITE,
        description="Update a pantry item's stock level ('I'm out of milk', 'mark eggs as low').",
        parameters=_object({
            "itemName": {"type": "string", "description": "Pantry item name"},
            "stockLevel": _STOCK_LEVEL,
        }, ["itemName", "stockLevel"]),
    ),
    ToolSpec(
        name="check_off_item",
        kind=ToolKind.WRITE,
        description="Check off an item on a shopping list ('got the milk').",
        parameters=_object({
            "listId": {"type": "string", "description": "List ID"},
            "itemName": {"type": "string", "description": "Item name to check off"},
        }, ["itemName"]),
    ),
    ToolSpec(
        name="add_pantry_item",
        kind=ToolKind.WRITE,
        description="Add a new item to the pantry ('add rice to my pantry').",
        parameters=_object({
            "name": {"type": "string", "description": "Item name"},
            "category": {"type": "string", "description": "Category, e.g. 'Dairy', 'Grains'"},
            "stockLevel": _STOCK_LEVEL,
        }, ["name"]),
    ),
]

CONFIRMED_TOOLS = [
    ToolSpec(
        name="delete_list",
        kind=ToolKind.WRITE,
        requires_confirmation=True,
        description="Delete a shopping list permanently. The user will be asked to confirm.",
        parameters=_object({
            "listId": {"type": "string", "description": "List ID if known"},
            "listName": {"type": "string", "description": "List name"},
        }),
        confirm_prompt="Delete your {listName} list? This can't be undone.",
    ),
    ToolSpec(
        name="remove_list_item",
        kind=ToolKind.WRITE,
        requires_confirmation=True,
        description="Remove an item from a shopping list. The user will be asked to confirm.",
        parameters=_object({
            "listId": {"type": "string", "description": "List ID"},
            "itemName": {"type": "string", "description": "Item to remove"},
        }, ["itemName"]),
        confirm_prompt="Remove {itemName} from your list?",
    ),
]


def default_catalog() -> ToolCatalog:
    return ToolCatalog([*READ_TOOLS, *WRITE_TOOLS, *CONFIRMED_TOOLS])

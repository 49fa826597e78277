"""Model catalog: raw backend model ids to display names, colors and sort order."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    display_name: str
    color: str
    order: int


MODEL_CATALOG: dict[str, ModelInfo] = {
    "MODEL_PLACEHOLDER_M18": ModelInfo("Gemini 3 Flash", "#8AB4F8", 1),
    "MODEL_PLACEHOLDER_M8": ModelInfo("Gemini 3 Pro (High)", "#185ABC", 2),
    "MODEL_PLACEHOLDER_M7": ModelInfo("Gemini 3 Pro (Low)", "#1A73E8", 3),
    "MODEL_PLACEHOLDER_M12": ModelInfo("Claude Opus 4.5 (Thinking)", "#FF6B35", 4),
    "MODEL_CLAUDE_4_5_SONNET_THINKING": ModelInfo("Claude Sonnet 4.5 (Thinking)", "#E37400", 5),
    "MODEL_CLAUDE_4_5_SONNET": ModelInfo("Claude Sonnet 4.5", "#F9AB00", 6),
    "MODEL_OPENAI_GPT_OSS_120B_MEDIUM": ModelInfo("GPT-OSS 120B (Medium)", "#10B981", 7),
    "MODEL_GOOGLE_GEMINI_2_5_FLASH": ModelInfo("Gemini 2.5 Flash", "#4285F4", 8),
    "MODEL_GOOGLE_GEMINI_2_5_FLASH_LITE": ModelInfo("Gemini 2.5 Flash Lite", "#81C995", 9),
}

DEFAULT_COLOR = "#6B7280"
UNKNOWN_ORDER = 999

_ORDER_BY_DISPLAY_NAME = {info.display_name: info.order for info in MODEL_CATALOG.values()}


def display_name(model_id: str) -> str:
    """Resolve a raw model id to its display name (unknown ids map to themselves)."""
    info = MODEL_CATALOG.get(model_id)
    return info.display_name if info else model_id


def color(model_id: str) -> str:
    info = MODEL_CATALOG.get(model_id)
    return info.color if info else DEFAULT_COLOR


def order(name: str) -> int:
    """Sort order for a display name; unknown models sort last."""
    return _ORDER_BY_DISPLAY_NAME.get(name, UNKNOWN_ORDER)


def display_name_colors() -> dict[str, str]:
    return {info.display_name: info.color for info in MODEL_CATALOG.values()}


def ordered_display_names() -> list[str]:
    return [
        info.display_name for info in sorted(MODEL_CATALOG.values(), key=lambda i: i.order)
    ]


def sort_display_names(names) -> list[str]:
    """Sort display names by catalog order, keeping unknown names in given order."""
    return sorted(names, key=order)

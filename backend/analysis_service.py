"""
UI Analyzer — Screenshot Analysis
Extracts a design summary (colors, typography, layout, components, UX notes)
from uploaded screenshots using Google Gemini. Falls back to a static demo
analysis when no API key is available or the model call fails.
"""

import logging
import re
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

MODEL_NAMES = [
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-1.5-flash",
]

DEFAULT_COLORS = ["#667eea", "#764ba2", "#f8fafc", "#1e293b"]
FONT_WEIGHTS = ["400 (Regular)", "600 (Semibold)", "700 (Bold)"]

HEX_COLOR = re.compile(r"#[0-9A-Fa-f]{6}\b")
SENTENCE_SPLIT = re.compile(r"[.!?]+")
COMPONENT_WORDS = re.compile(r"\b(button|card|input|navigation|modal|tab|form)s?\b", re.I)
UX_WORDS = re.compile(r"user|experience|design|interface", re.I)

# Screenshot = (raw bytes, mime type)
Screenshot = Tuple[bytes, str]


def analyze_screenshots(images: List[Screenshot], api_key: Optional[str] = None,
                        use_ai: bool = True) -> dict:
    """
    Analyze one or more screenshots.
    AI analysis runs only when use_ai is set and an API key is present.
    """
    if not use_ai or not api_key:
        logger.info("AI analysis unavailable — using demo analysis.")
        return demo_analysis(len(images))

    try:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        parts = [_build_prompt(len(images))]
        parts += [{"mime_type": mime, "data": data} for data, mime in images]

        last_err = None
        for model_name in MODEL_NAMES:
            try:
                model = genai.GenerativeModel(model_name)
                response = model.generate_content(parts)
                logger.info(f"Gemini analysis via {model_name}")
                result = parse_analysis(response.text.strip())
                result["generatedBy"] = model_name
                return result
            except Exception as e:
                last_err = e
                logger.warning(f"Gemini model {model_name} failed: {e}")
                continue

        raise last_err

    except Exception as e:
        logger.error(f"All Gemini models failed: {e}")
        return demo_analysis(len(images))


def _build_prompt(image_count: int) -> str:
    return f"""You are a UI/UX expert analyzing mobile app screenshots ({image_count} image(s)).

Extract:
1. Color palette (hex values)
2. Typography details (fonts, sizes, hierarchy)
3. Layout patterns and spacing
4. UI components and their styles
5. UX insights and design patterns

Provide specific, actionable details for a developer to recreate similar UI."""


# ── Free-text scraping ────────────────────────────────────────────────────────
def _sentences(text: str) -> List[str]:
    return [s.strip() for s in SENTENCE_SPLIT.split(text) if s.strip()]


def _value(text: str, pattern: str) -> Optional[str]:
    match = re.search(pattern, text, re.I)
    return match.group(1).strip() if match else None


def extract_colors(text: str) -> List[str]:
    seen = []
    for color in HEX_COLOR.findall(text):
        if color not in seen:
            seen.append(color)
    return seen


def extract_typography(text: str) -> dict:
    return {
        "primaryFont": _value(text, r"primary font.*?([A-Za-z][A-Za-z ]+)") or "System Font",
        "secondaryFont": _value(text, r"secondary font.*?([A-Za-z][A-Za-z ]+)") or "System Font",
        "headingSize": _value(text, r"heading.*?(\d+(?:-\d+)?px)") or "24-32px",
        "bodySize": _value(text, r"body.*?(\d+(?:-\d+)?px)") or "16-18px",
        "fontWeights": list(FONT_WEIGHTS),
        "lineHeight": "1.4-1.6",
    }


def extract_layout(text: str) -> dict:
    return {
        "gridSystem": _value(text, r"grid([^.\n]+)") or "Responsive grid system",
        "spacing": _value(text, r"spacing([^.\n]+)") or "8px, 16px, 24px, 32px",
        "borderRadius": _value(text, r"border.?radius([^.\n]+)") or "8px, 12px, 16px",
        "margins": _value(text, r"margins?([^.\n]+)") or "Consistent margins throughout",
        "containerWidth": "1200px max-width",
    }


def extract_components(text: str) -> List[str]:
    found = [s for s in _sentences(text) if COMPONENT_WORDS.search(s)]
    return found or [
        "Modern button styling with rounded corners",
        "Card-based layout with subtle shadows",
        "Clean input fields with minimal borders",
    ]


def extract_ux_insights(text: str) -> List[str]:
    found = [s for s in _sentences(text) if len(s) > 20 and UX_WORDS.search(s)]
    return found or [
        "Clean, user-friendly interface design",
        "Consistent visual hierarchy throughout",
        "Mobile-optimized interaction patterns",
    ]


def parse_analysis(text: str) -> dict:
    return {
        "colors": extract_colors(text) or list(DEFAULT_COLORS),
        "typography": extract_typography(text),
        "layout": extract_layout(text),
        "components": extract_components(text),
        "uxInsights": extract_ux_insights(text),
        "rawAnalysis": text,
    }


def demo_analysis(image_count: int) -> dict:
    """Static analysis used when AI is unavailable."""
    plural = "s" if image_count != 1 else ""
    return {
        "colors": [
            "#667eea", "#764ba2", "#f8fafc", "#1e293b",
            "#e2e8f0", "#10b981", "#ef4444", "#f59e0b",
        ],
        "typography": {
            "primaryFont": "SF Pro Display",
            "secondaryFont": "SF Pro Text",
            "headingSize": "24-32px",
            "bodySize": "16-18px",
            "fontWeights": list(FONT_WEIGHTS),
            "lineHeight": "1.4-1.6",
        },
        "layout": {
            "gridSystem": "12-column responsive grid",
            "spacing": "8px, 16px, 24px, 32px (increments of 8)",
            "borderRadius": "8px, 12px, 16px (rounded corners)",
            "margins": "16px mobile, 24px tablet, 32px desktop",
            "containerWidth": "1200px max-width",
        },
        "components": [
            "Card-based layout with subtle shadows",
            "Rounded buttons with gradient backgrounds",
            "Input fields with minimal borders",
            "Navigation tabs with underline indicators",
            "Modal overlays with backdrop blur",
        ],
        "uxInsights": [
            f"Analysis based on {image_count} uploaded screenshot{plural}",
            "Clean, minimalist design with plenty of white space",
            "Consistent color palette throughout the interface",
            "Clear visual hierarchy with proper typography scaling",
            "Mobile-first responsive design approach",
        ],
        "generatedBy": "demo",
    }

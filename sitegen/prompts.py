from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, List, Optional

from jinja2 import DictLoader, Environment, StrictUndefined

from sitegen.providers import Message

_CONTEXT_HEADER = """You are an expert {{ role }}.
Project: AI-powered website builder
Tech Stack: Next.js 14, React 18, Tailwind CSS, TypeScript
Current Task: {{ task }}
Performance Target: Complete generation in < 30 seconds
"""

_TEMPLATES: Dict[str, str] = {
    "context_analysis": """Analyze the user's prompt and extract:
1. Industry/Business type
2. Target audience
3. Primary goals
4. Style preferences
5. Key features needed

Input: {{ prompt }}

Output as JSON:
{"industry": "string", "audience": "string", "goals": ["string"], "style": "string", "features": ["string"]}
""",
    "structure_generation": """Generate website structure based on:
Context: {{ context | tojson }}
Template: {{ template }}

Create a site with pages, each holding a hierarchical component tree:
1. Page layout structure
2. Section organization
3. Component placement
4. Navigation structure
5. Responsive breakpoints
{% if enhancement %}
Industry Context:
- Focus: {{ enhancement.focus }}
- Key Sections: {{ enhancement.sections | join(', ') }}
- Tone: {{ enhancement.tone }}
{% endif %}
Output a single JSON object with keys id, name, pages (each with id, name, path, components {root, version, metadata}, seo), globalStyles, navigation and metadata.
""",
    "content_generation": """Generate content for one page of the website:
Context: {{ context | tojson }}
Page: {{ page.name }} ({{ page.path }})
Structure: {{ structure | tojson }}

For each section, provide:
1. Headlines and subheadings
2. Body copy
3. Call-to-action text
4. Image alt text
5. SEO metadata (title <= 60 characters, description <= 160 characters)
{% if catalog %}
You may instead answer with {"selections": [{"componentId": "...", "props": {}, "content": {}}]} using registry component ids.
{% endif %}
Maintain consistency in tone and style throughout. Output the page's component tree as JSON {root, version, metadata}.
""",
    "design_system": """Create a cohesive design system:
Industry: {{ industry }}
Style: {{ style }}

Define:
1. Color palette (primary, secondary, accent, background, text)
2. Typography (headingFont, bodyFont)
3. Spacing system (base)
4. Border radius
5. Shadows (none, subtle, medium or strong)

Output as JSON matching {colors, typography, spacing, borderRadius, shadows}.
""",
}

SYSTEM_PROMPTS: Dict[str, Dict[str, str]] = {
    "structure": {
        "role": "web architect specializing in modern React applications",
        "task": "Generate optimized website structure with component hierarchy",
        "body": "Return ONLY valid JSON. Use semantic component names. Maximum nesting depth: 10 levels.",
    },
    "content": {
        "role": "content strategist and copywriter",
        "task": "Generate compelling, SEO-optimized content for websites",
        "body": "Headlines are benefit-focused and 60 characters max. Write conversion-focused copy with clear calls-to-action.",
    },
    "seo": {
        "role": "SEO specialist",
        "task": "Optimize content for search engines and user experience",
        "body": "Output concise, actionable SEO improvements.",
    },
    "code": {
        "role": "senior full-stack developer",
        "task": "Generate production-ready React components and utilities",
        "body": "Write TypeScript-first code following React 18 practices.",
    },
    "analysis": {
        "role": "business analyst and UX strategist",
        "task": "Analyze user requirements and generate strategic recommendations",
        "body": "Output a structured analysis as JSON.",
    },
}

_PLAIN_SYSTEM = {
    "images": "Generate high-quality, professional images for websites. Style: modern, clean, professional.",
    "simple": "You are a helpful assistant for quick website-related tasks. Be concise, accurate, and fast.",
}

INDUSTRY_ENHANCEMENTS: Dict[str, Dict[str, Any]] = {
    "saas": {
        "focus": "conversion optimization, feature highlighting, trust building",
        "sections": ["hero", "features", "pricing", "testimonials", "cta"],
        "tone": "professional, innovative, solution-focused",
    },
    "ecommerce": {
        "focus": "product showcase, easy navigation, trust signals",
        "sections": ["hero", "products", "categories", "reviews", "checkout"],
        "tone": "engaging, trustworthy, action-oriented",
    },
    "portfolio": {
        "focus": "visual impact, work showcase, personal brand",
        "sections": ["hero", "about", "projects", "skills", "contact"],
        "tone": "creative, personal, professional",
    },
    "corporate": {
        "focus": "credibility, services, company values",
        "sections": ["hero", "about", "services", "team", "contact"],
        "tone": "authoritative, trustworthy, formal",
    },
    "blog": {
        "focus": "content discovery, readability, engagement",
        "sections": ["hero", "featured", "recent", "categories", "newsletter"],
        "tone": "conversational, informative, engaging",
    },
    "restaurant": {
        "focus": "menu presentation, ambiance, reservations",
        "sections": ["hero", "menu", "about", "reservations", "location"],
        "tone": "inviting, appetizing, warm",
    },
}

_env = Environment(loader=DictLoader(_TEMPLATES), undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
_header = _env.from_string(_CONTEXT_HEADER)


def system_prompt(task: str) -> str:
    if task in _PLAIN_SYSTEM:
        return _PLAIN_SYSTEM[task]
    entry = SYSTEM_PROMPTS.get(task)
    if entry is None:
        return _PLAIN_SYSTEM["simple"]
    return _header.render(role=entry["role"], task=entry["task"]) + "\n" + entry["body"]


def render_stage(stage: str, **values: Any) -> str:
    """Render a stage template; a missing variable raises jinja2.UndefinedError."""
    return _env.get_template(stage).render(**values)


def stage_messages(task: str, stage: str, **values: Any) -> List[Message]:
    return [
        {"role": "system", "content": system_prompt(task)},
        {"role": "user", "content": render_stage(stage, **values)},
    ]


def enhancement_for(industry: Optional[str]) -> Optional[Dict[str, Any]]:
    return INDUSTRY_ENHANCEMENTS.get((industry or "").lower())


# ---------------------------------------------------------------------------
# Keyword heuristics used to seed the context-analysis stage
# ---------------------------------------------------------------------------

INDUSTRY_KEYWORDS: Dict[str, List[str]] = {
    "saas": ["saas", "software", "platform", "app", "tool", "service", "subscription", "cloud", "api", "dashboard"],
    "ecommerce": ["ecommerce", "shop", "store", "product", "sell", "buy", "cart", "checkout", "inventory", "retail"],
    "portfolio": ["portfolio", "showcase", "work", "projects", "creative", "designer", "developer", "artist"],
    "corporate": ["company", "business", "enterprise", "corporate", "firm", "agency", "consulting", "professional"],
    "blog": ["blog", "article", "post", "content", "writing", "journal", "magazine", "publication"],
    "restaurant": ["restaurant", "food", "menu", "dining", "cafe", "bistro", "cuisine", "reservation"],
}

STYLE_KEYWORDS: Dict[str, List[str]] = {
    "modern": ["modern", "clean", "minimal", "sleek", "contemporary", "fresh"],
    "professional": ["professional", "corporate", "business", "formal", "serious"],
    "playful": ["fun", "playful", "colorful", "vibrant", "energetic", "bold"],
    "elegant": ["elegant", "luxury", "premium", "sophisticated", "refined"],
    "tech": ["tech", "technical", "digital", "futuristic", "innovative"],
    "organic": ["natural", "organic", "earthy", "warm", "friendly", "welcoming"],
}

FEATURE_KEYWORDS: Dict[str, List[str]] = {
    "booking": ["booking", "reservation", "appointment", "schedule", "calendar"],
    "payment": ["payment", "checkout", "purchase", "subscription", "pricing"],
    "auth": ["login", "signup", "authentication", "user", "account", "profile"],
    "search": ["search", "filter", "find", "discover", "browse"],
    "social": ["social", "share", "comment", "like", "follow", "community"],
    "analytics": ["analytics", "dashboard", "metrics", "tracking", "insights"],
    "chat": ["chat", "message", "support", "contact", "communication"],
    "media": ["gallery", "video", "image", "media", "photo", "portfolio"],
}

GOAL_KEYWORDS: Dict[str, List[str]] = {
    "increase sales": ["sell", "sales", "revenue", "conversion"],
    "build brand": ["brand", "awareness", "recognition"],
    "generate leads": ["leads", "contacts", "inquiries"],
    "showcase work": ["showcase", "portfolio", "display"],
    "provide information": ["inform", "educate", "explain"],
    "build community": ["community", "engage", "connect"],
}

TONE_KEYWORDS: Dict[str, List[str]] = {
    "professional": ["corporate", "business", "enterprise", "formal"],
    "friendly": ["friendly", "casual", "approachable", "warm"],
    "innovative": ["innovative", "cutting-edge", "modern", "tech"],
    "playful": ["fun", "playful", "creative", "energetic"],
    "authoritative": ["expert", "authority", "leading", "trusted"],
}

INDUSTRY_TONES = {
    "saas": "professional",
    "ecommerce": "friendly",
    "portfolio": "creative",
    "corporate": "professional",
    "blog": "conversational",
    "restaurant": "inviting",
}

_AUDIENCE_PATTERNS = [
    (re.compile(r"for\s+([\w\s]+?)(?:\.|,|$)", re.IGNORECASE), 1),
    (re.compile(r"targeting\s+([\w\s]+?)(?:\.|,|$)", re.IGNORECASE), 1),
    (re.compile(r"aimed at\s+([\w\s]+?)(?:\.|,|$)", re.IGNORECASE), 1),
    (re.compile(r"(b2b|b2c|enterprise|consumer|professional)", re.IGNORECASE), 0),
]

_STOP_WORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by", "from", "as", "is", "was", "are", "were"}


def _first_match(text: str, table: Dict[str, List[str]]) -> Optional[str]:
    for name, words in table.items():
        if any(w in text for w in words):
            return name
    return None


def _keywords(prompt: str) -> List[str]:
    words = [w for w in re.sub(r"[^\w\s]", " ", prompt.lower()).split() if len(w) > 3 and w not in _STOP_WORDS]
    return [w for w, _ in Counter(words).most_common(10)]


def heuristic_context(prompt: str) -> Dict[str, Any]:
    """Keyword-based context extraction; the model's answer is layered on top."""
    lower = (prompt or "").lower()
    industry = _first_match(lower, INDUSTRY_KEYWORDS) or "general"

    audience = "general audience"
    for pattern, group in _AUDIENCE_PATTERNS:
        m = pattern.search(lower)
        if m:
            audience = (m.group(group) or m.group(0)).strip() or audience
            break

    goals = [goal for goal, words in GOAL_KEYWORDS.items() if any(w in lower for w in words)]
    features = [feat for feat, words in FEATURE_KEYWORDS.items() if any(w in lower for w in words)]
    if "ecommerce" in lower or "shop" in lower:
        features += [f for f in ("payment", "search") if f not in features]
    if ("blog" in lower or "content" in lower) and "search" not in features:
        features.append("search")

    return {
        "industry": industry,
        "audience": audience,
        "goals": goals or ["establish online presence"],
        "style": _first_match(lower, STYLE_KEYWORDS) or "modern",
        "features": features,
        "tone": _first_match(lower, TONE_KEYWORDS) or INDUSTRY_TONES.get(industry, "professional"),
        "keywords": _keywords(prompt or ""),
    }

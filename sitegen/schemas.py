from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase on the wire, unknown keys dropped."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ComponentContent(CamelModel):
    text: Optional[str] = None
    html: Optional[str] = None
    markdown: Optional[str] = None


class ComponentStyles(CamelModel):
    class_name: Optional[str] = None
    style: Optional[Dict[str, Any]] = None
    responsive: Optional[Dict[str, Any]] = None


class ComponentMeta(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    registry_component: Optional[str] = None
    performance_score: Optional[float] = None


class ComponentNode(CamelModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    props: Dict[str, Any] = Field(default_factory=dict)
    children: Optional[List["ComponentNode"]] = None
    content: Optional[ComponentContent] = None
    styles: Optional[ComponentStyles] = None
    metadata: Optional[ComponentMeta] = None


class TreeMetadata(CamelModel):
    generated_at: str
    model: str
    prompt_version: Optional[str] = None
    generation_time: Optional[float] = None
    token_count: Optional[int] = None


class ComponentTree(CamelModel):
    root: ComponentNode
    version: str
    metadata: TreeMetadata


class ContextExtraction(CamelModel):
    industry: str = Field(..., min_length=1)
    audience: str
    goals: List[str]
    style: str
    features: List[str]
    tone: Optional[str] = None
    competitors: Optional[List[str]] = None
    keywords: Optional[List[str]] = None


class SEOMetadata(CamelModel):
    title: str = Field(..., max_length=60)
    description: str = Field(..., max_length=160)
    keywords: List[str] = Field(default_factory=list)
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    canonical_url: Optional[str] = None
    robots: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = None


class PageSettings(CamelModel):
    is_public: bool = True
    requires_auth: bool = False
    layout: Literal["full", "sidebar", "centered"] = "full"


class Page(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    template: Optional[str] = None
    components: ComponentTree
    seo: SEOMetadata
    settings: PageSettings = Field(default_factory=PageSettings)


class Colors(CamelModel):
    primary: str
    secondary: str
    accent: str
    background: str
    text: str
    muted: Optional[str] = None
    border: Optional[str] = None


class Typography(CamelModel):
    heading_font: str
    body_font: str
    mono_font: Optional[str] = None
    scale: Optional[float] = None


class Spacing(CamelModel):
    base: str
    scale: Optional[List[float]] = None


class GlobalStyles(CamelModel):
    colors: Colors
    typography: Typography
    spacing: Spacing
    border_radius: str
    shadows: Literal["none", "subtle", "medium", "strong"]


class NavItem(CamelModel):
    label: str
    path: str
    icon: Optional[str] = None
    children: Optional[List["NavItem"]] = None


class Navigation(CamelModel):
    main: List[NavItem]
    footer: Optional[List[NavItem]] = None


class SiteMetadata(CamelModel):
    created_at: str
    updated_at: str
    version: str
    template: Optional[str] = None
    industry: Optional[str] = None


class SiteStructure(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    domain: Optional[str] = None
    pages: List[Page]
    global_styles: GlobalStyles
    navigation: Navigation
    metadata: SiteMetadata


class SelectedComponent(CamelModel):
    component_id: str = Field(..., min_length=1)
    props: Dict[str, Any] = Field(default_factory=dict)
    content: Optional[Dict[str, Any]] = None
    children: Optional[List["SelectedComponent"]] = None


class ComponentSelection(CamelModel):
    selections: List[SelectedComponent]
    reasoning: Optional[str] = None


ComponentNode.model_rebuild()
NavItem.model_rebuild()
SelectedComponent.model_rebuild()


def default_global_styles() -> Dict[str, Any]:
    return {
        "colors": {
            "primary": "#3b82f6",
            "secondary": "#8b5cf6",
            "accent": "#f59e0b",
            "background": "#ffffff",
            "text": "#111827",
            "muted": "#6b7280",
            "border": "#e5e7eb",
        },
        "typography": {"headingFont": "Inter", "bodyFont": "Inter", "monoFont": "JetBrains Mono", "scale": 1.25},
        "spacing": {"base": "1rem"},
        "borderRadius": "0.5rem",
        "shadows": "medium",
    }


def default_site_metadata(industry: Optional[str] = None) -> Dict[str, Any]:
    now = utc_now_iso()
    meta: Dict[str, Any] = {"createdAt": now, "updatedAt": now, "version": "1.0.0"}
    if industry:
        meta["industry"] = industry
    return meta

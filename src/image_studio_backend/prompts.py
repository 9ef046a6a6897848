"""
Prompt construction for optimize/edit/refine tasks.

Each task type has a small set of prompt templates. Templates are ordered by
relevance to the session context (product category, desired style) and then
expanded with the user's text, the most recent previous edits and
category-specific instructions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

CONSISTENCY_SUFFIX = " Maintain product authenticity and ensure the result looks natural and professional."
RECENT_EDIT_COUNT = 3


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    name: str
    prompt: str
    description: str
    category: str
    quality: str
    use_cases: Tuple[str, ...] = ()


@dataclass
class PromptContext:
    """Editing context carried by a session."""

    product_category: Optional[str] = None
    desired_style: Optional[str] = None
    previous_edits: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PromptContext":
        data = data or {}
        return cls(
            product_category=data.get("product_category") or None,
            desired_style=data.get("desired_style") or None,
            previous_edits=list(data.get("previous_edits") or []),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.product_category or self.desired_style or self.previous_edits)


TEMPLATES: Tuple[PromptTemplate, ...] = (
    PromptTemplate(
        id="optimize_premium",
        name="Premium E-commerce Optimization",
        prompt=(
            "Transform this product image into a premium e-commerce photograph: remove any distracting or messy "
            "background, replace with a clean pure white background, enhance product lighting to show natural "
            "shadows and depth, improve color saturation and vibrancy while maintaining realistic tones, sharpen "
            "product details and textures, ensure the product appears premium and desirable for luxury online shopping."
        ),
        description="High-end optimization for premium products",
        category="optimize",
        quality="premium",
        use_cases=("luxury", "fashion", "jewelry", "electronics", "premium_brands"),
    ),
    PromptTemplate(
        id="optimize_standard",
        name="Standard E-commerce Optimization",
        prompt=(
            "Create a professional product photograph suitable for online retail: replace background with clean "
            "white background, adjust lighting for clear product visibility, enhance colors naturally, improve "
            "overall product presentation while maintaining authentic appearance, optimize for e-commerce platform "
            "requirements."
        ),
        description="Standard optimization for most products",
        category="optimize",
        quality="standard",
        use_cases=("general", "home_goods", "tools", "books", "accessories"),
    ),
    PromptTemplate(
        id="optimize_conservative",
        name="Conservative Product Enhancement",
        prompt=(
            "Gently improve this product image for online sales: clean up the background with a subtle white "
            "background, make minor lighting adjustments to improve visibility, maintain natural product colors and "
            "textures, ensure the product looks authentic and trustworthy for online shoppers."
        ),
        description="Gentle optimization preserving natural look",
        category="optimize",
        quality="conservative",
        use_cases=("food", "organic", "handmade", "vintage", "natural_products"),
    ),
    PromptTemplate(
        id="edit_background_white",
        name="White Background Replacement",
        prompt=(
            "Replace the current background with a clean, pure white background while preserving the product "
            "exactly as it is. Maintain natural product shadows and lighting, ensure smooth edge transitions, keep "
            "all product details and colors unchanged."
        ),
        description="Clean white background replacement",
        category="edit",
        quality="standard",
        use_cases=("background_removal", "clean_background", "product_isolation"),
    ),
    PromptTemplate(
        id="edit_lighting_enhance",
        name="Lighting Enhancement",
        prompt=(
            "Improve the lighting in this product image: enhance brightness and contrast to show product details "
            "clearly, add soft natural-looking shadows for depth, improve overall illumination while maintaining "
            "realistic appearance, ensure the product looks appealing under good lighting conditions."
        ),
        description="Professional lighting improvement",
        category="edit",
        quality="standard",
        use_cases=("poor_lighting", "shadow_enhancement", "visibility_improvement"),
    ),
    PromptTemplate(
        id="edit_color_vibrant",
        name="Color Vibrancy Enhancement",
        prompt=(
            "Enhance the colors in this product image: increase saturation and vibrancy to make the product more "
            "appealing, ensure colors remain realistic and true to the actual product, improve color balance and "
            "richness, make the product stand out attractively."
        ),
        description="Color enhancement for better appeal",
        category="edit",
        quality="standard",
        use_cases=("dull_colors", "color_correction", "vibrancy_boost"),
    ),
    PromptTemplate(
        id="refine_consistency",
        name="Consistency Refinement",
        prompt=(
            "Refine this product image while maintaining consistency with previous edits: make subtle improvements "
            "that build upon earlier modifications, ensure the overall style and quality remain coherent, fine-tune "
            "details without dramatic changes, preserve the established visual identity."
        ),
        description="Consistent refinement building on previous edits",
        category="refine",
        quality="standard",
        use_cases=("multi_round_editing", "consistency_maintenance", "iterative_improvement"),
    ),
    PromptTemplate(
        id="refine_polish",
        name="Final Polish Refinement",
        prompt=(
            "Apply final polish to this product image: make minor adjustments to perfect the overall appearance, "
            "fine-tune lighting and shadows, optimize color balance, ensure maximum visual appeal while maintaining "
            "product authenticity, create the best possible version for e-commerce use."
        ),
        description="Final polishing for optimal results",
        category="refine",
        quality="premium",
        use_cases=("final_touches", "perfection", "quality_optimization"),
    ),
)

CATEGORY_INSTRUCTIONS: Dict[str, str] = {
    "food": "Ensure the food looks fresh and appetizing, maintain natural food colors.",
    "fashion": "Show fabric textures clearly, maintain accurate colors and styling.",
    "jewelry": "Highlight shine and sparkle, show fine details and craftsmanship.",
    "electronics": "Show clean lines and modern appearance, highlight key features.",
    "luxury": "Emphasize premium quality and sophisticated appearance.",
    "handmade": "Preserve authentic handcrafted character and unique details.",
    "vintage": "Maintain the vintage character while improving clarity.",
    "organic": "Preserve natural appearance and authentic organic qualities.",
}

FALLBACK_PROMPTS: Dict[str, str] = {
    "optimize": "Improve this product image for e-commerce use: clean background, better lighting, enhanced product presentation.",
    "edit": "Edit this product image to improve its appearance for online sales while maintaining product authenticity.",
    "refine": "Make subtle refinements to this product image to optimize its visual appeal for e-commerce use.",
}

OPTIMIZE_QUALITY_ORDER = ("premium", "standard", "conservative")


class PromptBuilder:
    """Turns a task type, user text and session context into backend-ready prompts."""

    def __init__(self, templates: Sequence[PromptTemplate] = TEMPLATES) -> None:
        self._templates: Dict[str, PromptTemplate] = {t.id: t for t in templates}

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def all_templates(self) -> List[PromptTemplate]:
        return list(self._templates.values())

    def templates_for(self, task_type: str, context: Optional[PromptContext] = None) -> List[PromptTemplate]:
        templates = [t for t in self._templates.values() if t.category == task_type]
        if context is None or context.is_empty:
            return templates
        # sorted() is stable: equally relevant templates keep their declared order
        return sorted(templates, key=lambda t: -self._context_score(t, context))

    def build_custom_prompt(
        self,
        template: PromptTemplate,
        user_prompt: Optional[str] = None,
        context: Optional[PromptContext] = None,
    ) -> str:
        prompt = template.prompt
        if user_prompt:
            prompt += f" Additionally: {user_prompt}"

        if context is not None:
            if context.previous_edits:
                recent = "; ".join(
                    f"{edit.get('type', 'edit')}: {edit.get('prompt', '')}"
                    for edit in context.previous_edits[-RECENT_EDIT_COUNT:]
                )
                prompt += f" Context from previous edits: {recent}."
            instructions = CATEGORY_INSTRUCTIONS.get(context.product_category or "")
            if instructions:
                prompt += f" {instructions}"

        return prompt + CONSISTENCY_SUFFIX

    def build(
        self,
        task_type: str,
        user_prompt: Optional[str] = None,
        context: Optional[PromptContext] = None,
    ) -> List[str]:
        """
        Build the prompts for one processing request.

        optimize yields one prompt per quality level (premium, standard,
        conservative). edit yields the two most relevant templates when the
        user supplied text, otherwise the white-background template. refine
        always uses the consistency template. An unknown task type gets its
        fallback prompt.
        """
        templates = self.templates_for(task_type, context)
        prompts: List[str] = []

        if task_type == "optimize":
            for quality in OPTIMIZE_QUALITY_ORDER:
                template = next((t for t in templates if t.quality == quality), None)
                if template is not None:
                    prompts.append(self.build_custom_prompt(template, user_prompt, context))
        elif task_type == "edit":
            if user_prompt:
                prompts.extend(self.build_custom_prompt(t, user_prompt, context) for t in templates[:2])
            elif templates:
                default = self._templates.get("edit_background_white") or templates[0]
                prompts.append(self.build_custom_prompt(default, None, context))
        elif task_type == "refine" and templates:
            template = self._templates.get("refine_consistency") or templates[0]
            prompts.append(self.build_custom_prompt(template, user_prompt, context))

        return prompts or [self.fallback_prompt(task_type)]

    @staticmethod
    def fallback_prompt(task_type: str) -> str:
        return FALLBACK_PROMPTS.get(task_type, FALLBACK_PROMPTS["edit"])

    @staticmethod
    def _context_score(template: PromptTemplate, context: PromptContext) -> int:
        score = 0
        if context.product_category and context.product_category in template.use_cases:
            score += 10
        if context.desired_style:
            haystack = f"{template.name} {template.description}".lower()
            score += 5 * sum(1 for keyword in context.desired_style.lower().split() if keyword in haystack)
        return score

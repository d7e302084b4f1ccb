"""Prompt construction for the image-generation provider."""

from magicstage.models.staging import (
    BudgetLevel,
    FurnitureCount,
    StagingPreferences,
    StagingStyle,
)

STYLE_GUIDES: dict[StagingStyle, str] = {
    StagingStyle.MODERN: (
        "Use modern style: clean lines, neutral colors (whites, grays, blacks), "
        "contemporary furniture, minimal decor, and sleek lighting fixtures. "
    ),
    StagingStyle.TRADITIONAL: (
        "Use traditional style: classic furniture pieces, warm colors (browns, creams, navy), "
        "elegant patterns, and traditional accessories. "
    ),
    StagingStyle.MINIMALIST: (
        "Use minimalist style: very few furniture pieces, lots of white space, simple "
        "geometric forms, and maximum 3-4 carefully chosen items. "
    ),
    StagingStyle.LUXURY: (
        "Use luxury style: high-end furniture, rich materials (marble, hardwood, leather), "
        "sophisticated color palette, and premium accessories. "
    ),
    StagingStyle.CONTEMPORARY: (
        "Use contemporary style: blend modern and traditional elements with current design "
        "trends, mixed textures, and statement pieces. "
    ),
    StagingStyle.RUSTIC: (
        "Use rustic style: natural wood elements, warm earth tones, cozy textures, and "
        "farmhouse-style accessories. "
    ),
}

FURNITURE_GUIDES: dict[FurnitureCount, str] = {
    FurnitureCount.MINIMAL: "Use only essential furniture pieces to avoid clutter. ",
    FurnitureCount.MODERATE: "Include a comfortable amount of furniture without overcrowding. ",
    FurnitureCount.FULL: "Fully furnish the space with all necessary and decorative pieces. ",
}

BUDGET_GUIDES: dict[BudgetLevel, str] = {
    BudgetLevel.ECONOMY: "Focus on affordable, practical furniture choices. ",
    BudgetLevel.MID_RANGE: "Balance quality and cost with mid-tier furniture selections. ",
    BudgetLevel.LUXURY: "Use high-end, designer-quality furniture and accessories. ",
}

TECHNICAL_REQUIREMENTS = (
    "IMPORTANT TECHNICAL REQUIREMENTS: "
    "1. Maintain the exact room architecture, walls, windows, doors, and lighting conditions. "
    "2. Add realistic shadows under all furniture pieces. "
    "3. Ensure all furniture is properly scaled and naturally positioned. "
    "4. Keep the same perspective and camera angle as the original. "
    "5. Match the existing lighting conditions and time of day. "
    "6. Preserve any existing built-in features like fireplaces, built-ins, or fixtures. "
)


def build_staging_prompt(
    custom_prompt: str = "",
    style: StagingStyle = StagingStyle.MODERN,
    preferences: StagingPreferences | None = None,
) -> str:
    """
    Build the full instruction sent with the room image.

    Args:
        custom_prompt: Free-text requirements from the user (may be empty)
        style: Interior style
        preferences: Optional colors, furniture density and budget

    Returns:
        str: Prompt text
    """
    parts = [
        "Generate a professionally staged version of this empty room. ",
        "Add realistic furniture, decor, and styling to make this space market-ready "
        "for real estate photography. ",
        STYLE_GUIDES[style],
    ]

    if preferences:
        if preferences.colors:
            parts.append(f"Incorporate these specific colors: {', '.join(preferences.colors)}. ")
        if preferences.furniture_count:
            parts.append(FURNITURE_GUIDES[preferences.furniture_count])
        if preferences.budget:
            parts.append(BUDGET_GUIDES[preferences.budget])

    parts.append(TECHNICAL_REQUIREMENTS)

    if custom_prompt and custom_prompt.strip():
        parts.append(f"ADDITIONAL SPECIFIC REQUIREMENTS: {custom_prompt.strip()} ")

    parts.append(
        "The final result must look photorealistic and professional for real estate marketing, "
        "indistinguishable from a professionally photographed staged room."
    )

    return "".join(parts)

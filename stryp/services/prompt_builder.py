"""Deterministic prompt composition from panel text + character + location context."""

STYLE_PREAMBLE = (
    "(Technical Specs): 3D render, Pixar-style animation to look like a movie screencap. "
    "High quality, 8k resolution, cinematic lighting."
)
STYLE_SUFFIX = "(Style): 3D Pixar-style animation."
DEFAULT_SETTING = "Background matches the mood/action."

VIDEO_PREAMBLE = (
    "High-end 3D animated cinematic video, 8K resolution, Pixar and Disney influence."
)

CHARACTER_DESCRIPTION_INSTRUCTION = (
    "Describe this character's physical appearance in detail for an image generator prompt. "
    "Focus on hair, eyes, clothing, facial features, and style. "
    "If there are two images, combine the details to create a consistent description. "
    "Ignore the background. Keep it concise but descriptive."
)

LOCATION_DESCRIPTION_INSTRUCTION = """Analyze these {count} images/videos in detail for use as a background location reference in a comic book generation prompt.

These items represent different angles or details of the SAME location. Combine them to create one unified visual description.

Describe the:
1. Lighting (Time of day, direction, color, intensity)
2. Color Palette (Dominant colors, mood)
3. Environment/Setting (Indoors/Outdoors, key landmarks, architecture, nature elements)
4. Atmosphere (Peaceful, chaotic, futuristic, rustic, etc.)
5. Textures and Materials (Wood, stone, neon, water, etc.)

Do NOT describe any people or characters in the scene. Focus ONLY on the location/background.
Keep it descriptive but concise."""


def location_block(location: dict | None) -> str:
    """Setting block for image prompts, empty when the location has no AI summary."""
    if not location or not location.get("visual_description"):
        return ""
    return (
        "SETTING / LOCATION REFERENCE:\n"
        f"{location['visual_description']}\n\n"
        "Start the scene with this setting. Ensure the background matches this description accurately."
    )


def build_image_prompt(
    description: str,
    character: dict | None = None,
    visual_description: str = "",
    location: dict | None = None,
) -> str:
    """Build an image prompt.

    Order: style preamble, character appearance (when a character speaks),
    scene action, location block, style suffix.
    """
    parts = [STYLE_PREAMBLE]

    if character:
        parts.append(
            "(Subject & Action):\n"
            f"Visual Appearance (PRIORITY): {visual_description}.\n"
            f'Character Name: "{character.get("name", "")}" '
            "(Note: Rely on Visual Appearance for species/looks, ignore name bias).\n"
            f"Action: {description}"
        )
    else:
        parts.append(f"(Scene Description): {description}.")

    setting = location_block(location)
    parts.append(f"(Setting): {setting or DEFAULT_SETTING}")
    parts.append("IMPORTANT: The background MUST match the Setting description accurately.")
    parts.append(STYLE_SUFFIX)
    return "\n\n".join(parts)


def build_video_prompt(
    description: str,
    character: dict | None = None,
    visual_description: str = "",
    location: dict | None = None,
) -> str:
    lines = [VIDEO_PREAMBLE]
    if character:
        lines.append("Style: Vibrant colors, professional lighting, expressive character animation.")
        lines.append(f"Character: {visual_description}.")
    else:
        lines.append("Style: Vibrant colors, professional lighting.")
    lines.append(f"Action: {description}.")
    if location and location.get("visual_description"):
        lines.append(f"SETTING: {location['visual_description']}")
    if character:
        lines.append("Motion: Dynamic but smooth camera work.")
    else:
        lines.append("Motion: Smooth cinematic pans.")
    lines.append("Duration: 8 seconds. High-fidelity spatial audio.")
    return "\n".join(lines)


def build_script_prompt(
    scene_description: str,
    mood: str,
    characters: list[dict],
    prior_context: str,
) -> str:
    character_context = "\n".join(f"{c['name']}: {c.get('bio', '')}" for c in characters)
    return f"""Create a comic strip script.

Context: {prior_context}
Scene Description: {scene_description}
Mood: {mood}
Characters available:
{character_context or "(none)"}

Call the record_panels tool with the panels in reading order. Each panel has:
- "description": A detailed visual description for an image generator. Include specific camera angles (e.g., 'Wide shot', 'Close up') and lighting details.
- "dialogue": The text spoken in the panel (or caption).
- "character_name": The name of the character speaking (if any), exactly as listed above."""

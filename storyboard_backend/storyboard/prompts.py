SYSTEM_PROMPT = """You are a storyboard writer for animated music videos and short stories.
You break a story into numbered visual scenes that a single image can show.
Characters must look identical in every scene. Output ONLY valid JSON matching the provided schema."""


CONSISTENCY_INSTRUCTION = """CRITICAL: Without changing the characters or the original format, from beginning to end.
1. Character Faces: Keep every character face 100% identical and recognizable from Scene 1 to Scene {scene_count}.
2. Character Outfits: Maintain the same clothing throughout.
3. Art Style: Strictly maintain the {style} aesthetic throughout the entire storyboard."""


SCENE_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "sceneNumber": {"type": "integer"},
            "action": {"type": "string"},
            "consistentContext": {"type": "string"},
        },
        "required": ["sceneNumber", "action", "consistentContext"],
    },
}


SCENE_BATCH_TEMPLATE = """{consistency}

TASK: Generate the script for scenes {start} to {end} of a {total}-scene storyboard.
Return exactly {count} scenes, numbered from {start}.
SYNOPSIS: {synopsis}
CHARACTERS (PERSISTENT):
{characters}
STYLE: {style}

Each scene has an "action" (what happens, one image worth) and a "consistentContext"
(setting, lighting and props that must carry over to neighbouring scenes)."""


SCENE_PROMPT_TEMPLATE = """Style: {style}. {consistency}
Characters: {characters}
Action: {action}
Setting: {setting}"""


CHARACTER_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "gender": {"type": "string"},
            "age": {"type": "string"},
            "description": {"type": "string"},
        },
        "required": ["name", "gender", "age", "description"],
    },
}


CHARACTER_TEMPLATE = """Create {count} detailed characters for this story.
STORY: {synopsis}
VISUAL STYLE: {style}
Describe each character's face, hair, build and outfit so an illustrator can redraw them identically.{reference}"""


REFERENCE_CONSTRAINT = """
REFERENCE (HARD CONSTRAINT): match this face and style exactly.
Art style: {style_description}
Character: {character_description}"""


ANALYSIS_PROMPT = """Analyze this image for character traits and artistic style.
Return JSON with "artStyle" (the rendering style) and "characterDescription"
(face, hair, build, outfit of the main character)."""


METADATA_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "hashtags": {"type": "array", "items": {"type": "string"}},
        "keywords": {"type": "array", "items": {"type": "string"}},
    },
}


METADATA_TEMPLATE = """Generate YouTube metadata for this {kind} project: {title}.
Context: {context}
Give a catchy title, a description of 2-3 paragraphs, 5-10 hashtags and 10-15 keywords."""

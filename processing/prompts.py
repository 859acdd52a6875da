SUMMARY_SYSTEM_PROMPT = """You are an assistant that summarizes recorded \
conversations and meetings. Be clear and concise. Do not use emojis. Do not \
invent information that is not in the transcript. Answer with JSON only."""

SUMMARY_USER_PROMPT = """Analyze the following transcript and provide:
{instructions}

Format your response as a JSON object with the fields: {fields}.
"summary" is a string; every other field is a list of strings.

---
Transcript:
{transcription}"""


def build_user_prompt(transcript: str, max_length: int, include_key_points: bool,
                      include_action_items: bool, include_topics: bool) -> str:
    instructions = [f"1. A concise summary (at most {max_length} characters)"]
    fields = ["summary"]
    if include_key_points:
        instructions.append(f"{len(instructions) + 1}. 3-5 key points")
        fields.append("keyPoints")
    if include_action_items:
        instructions.append(f"{len(instructions) + 1}. Action items or decisions, if any")
        fields.append("actionItems")
    if include_topics:
        instructions.append(f"{len(instructions) + 1}. Main topics discussed")
        fields.append("topics")
    return SUMMARY_USER_PROMPT.format(
        instructions="\n".join(instructions),
        fields=", ".join(fields),
        transcription=transcript,
    )

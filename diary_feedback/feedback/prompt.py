"""Prompt template for diary feedback."""

from datetime import UTC, timedelta, timezone

from diary_feedback.models.schemas import DiaryEntry, Persona

MOOD_LABELS = {
    "happy": "嬉しい",
    "sad": "悲しい",
    "neutral": "普通",
    "excited": "興奮",
    "angry": "怒り",
    "anxious": "不安",
    "peaceful": "平和",
    "confused": "混乱",
}

WEEKDAYS = ("月曜日", "火曜日", "水曜日", "木曜日", "金曜日", "土曜日", "日曜日")

# Short-term memory: how many previous feedbacks are quoted back
MEMORY_SIZE = 2

MIN_PROMPT_LENGTH = 100
MAX_PROMPT_LENGTH = 2000


def mood_label(mood: str) -> str:
    return MOOD_LABELS.get(mood, mood)


def format_diary_date(entry: DiaryEntry, offset_hours: int = 9) -> str:
    """Format the entry date in local time, e.g. 2025年1月8日 水曜日."""
    created = entry.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    local = created.astimezone(timezone(timedelta(hours=offset_hours)))
    return f"{local.year}年{local.month}月{local.day}日 {WEEKDAYS[local.weekday()]}"


def build_feedback_prompt(
    persona: Persona,
    entry: DiaryEntry,
    previous_feedbacks: list[str] | None = None,
    offset_hours: int = 9,
) -> str:
    """
    Build the system prompt for one persona reacting to one diary entry.

    The output depends only on its arguments.
    """
    label = mood_label(entry.mood.value)

    system_section = f"""あなたは{persona.name}という{persona.role}です。

【あなたの特徴】
{persona.personality}

【話し方】
{persona.speech_style}

【フィードバックの目的】
ユーザーが書いた日記に対して、あなたの個性を活かした温かいフィードバックを提供してください。
ユーザーの気持ちに寄り添い、次の日への活力を与えるメッセージを心がけてください。

【フィードバックのガイドライン】
1. 日記の内容を丁寧に読み、ユーザーの感情や体験を理解する
2. {persona.role}としての独自の視点でコメントする
3. ユーザーの選んだ気分（{label}）を考慮したトーンにする
4. 100〜150文字程度で簡潔にまとめる
5. 押し付けがましくなく、自然で親しみやすい表現にする
6. ユーザーの体験を否定せず、共感や肯定的な視点を含める"""

    context_section = ""
    if previous_feedbacks:
        recent = "\n".join(previous_feedbacks[-MEMORY_SIZE:])
        context_section = f"\n\n【これまでのやり取り】\n過去にあなたが送ったフィードバック：\n{recent}\n"

    diary_section = f"""

【今回の日記】
日付: {format_diary_date(entry, offset_hours)}
気分: {label}
内容: "{entry.content}"

上記の日記を読んで、{persona.name}として心のこもったフィードバックを書いてください。"""

    return system_section + context_section + diary_section


def validate_prompt(prompt: str) -> list[str]:
    """Basic quality checks on a built prompt; returns problems found."""
    errors = []
    if len(prompt) < MIN_PROMPT_LENGTH:
        errors.append("Prompt is too short")
    if len(prompt) > MAX_PROMPT_LENGTH:
        errors.append("Prompt is too long")
    if "日記" not in prompt:
        errors.append("Prompt does not mention the diary")
    if "フィードバック" not in prompt:
        errors.append("Prompt has no feedback instruction")
    return errors

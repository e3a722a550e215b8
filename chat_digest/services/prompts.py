"""
Prompt templates for the chat digest service.
Contains the generative digest prompt plus the fixed templates used when no
generative backend is involved (fallback, empty day, error notice).
"""

from langchain_core.prompts import ChatPromptTemplate

# System prompt that defines the digest writer's role
SYSTEM_PROMPT = """You write daily digests of group chat conversations.
Your job is to turn one day of messages into a short, structured summary that someone who skipped the chat can read in a minute.

You should:
- Only use what is in the messages, never invent events or quotes
- Keep the original meaning of voice and video note transcripts
- Write plain text without Markdown, use emoji to mark sections
- Answer in {language}
"""

# Template for the digest request; {messages} is one line per message
DIGEST_TEMPLATE = """
Create the daily digest for the chat "{chat_title}" for {date_label}.

Messages of the day ({total_messages} in total):
{messages}

Requirements:
1. Start by addressing {target_mention}
2. Organise the digest into these sections:
   - Topics: the main subjects discussed
   - Decisions: agreements, plans and outcomes
   - Voice and video notes: a short summary of each, with its time and author
   - Fun: jokes, memes and memorable reactions
   - Statistics: the number of messages of the day
3. Be brief but informative
4. Do not exceed {max_chars} characters

Answer format:
{target_mention} here is what you missed in the chat:

[the digest]
"""

# Deterministic digest used when the generative backend is unavailable
FALLBACK_TEMPLATE = """{target_mention} here is what you missed in the chat:

📝 Topics: various discussions in "{chat_title}" on {date_label}
📊 Statistics: {total_messages} messages during the day
🎤 Voice/video notes: {voice_count}
📎 Media: {media_count}
💬 Text messages: {text_count}

A detailed summary is temporarily unavailable."""

# Digest for a day without any messages
EMPTY_DIGEST_TEMPLATE = """{target_mention} here is what you missed in the chat:

📝 Topics: no discussions
📊 Statistics: 0 messages during the day
🎤 Voice/video notes: none
📎 Media: none
💬 Text messages: none

It was quiet in the chat today. Everyone must be busy with important things! 😴"""

# Short notice sent to a chat when its scheduled digest failed
ERROR_NOTICE_TEMPLATE = "❌ Could not create the daily digest: {reason}"


def get_digest_prompt() -> ChatPromptTemplate:
    """Returns the chat prompt for generating a digest"""
    return ChatPromptTemplate.from_messages(
        [("system", SYSTEM_PROMPT), ("human", DIGEST_TEMPLATE)]
    )


def render_fallback_digest(
    target_mention: str,
    chat_title: str,
    date_label: str,
    total_messages: int,
    text_count: int,
    voice_count: int,
    media_count: int,
) -> str:
    return FALLBACK_TEMPLATE.format(
        target_mention=target_mention,
        chat_title=chat_title,
        date_label=date_label,
        total_messages=total_messages,
        text_count=text_count,
        voice_count=voice_count,
        media_count=media_count,
    )


def render_empty_digest(target_mention: str) -> str:
    return EMPTY_DIGEST_TEMPLATE.format(target_mention=target_mention)


def render_error_notice(reason: str) -> str:
    return ERROR_NOTICE_TEMPLATE.format(reason=reason)

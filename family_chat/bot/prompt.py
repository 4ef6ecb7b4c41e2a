"""Prompt composition for the completion provider"""

from typing import Dict, Iterable, List


def build_prompt(system_prompt: str, history: Iterable) -> List[Dict[str, str]]:
    """
    Turn chronological history into chat turns.

    Human messages become user turns prefixed with the sender's display name
    so the model can tell family members apart; the bot's own messages become
    assistant turns verbatim.
    """
    turns = [{'role': 'system', 'content': system_prompt}]
    for message in history:
        sender = message.sender
        if sender is not None and sender.is_bot:
            turns.append({'role': 'assistant', 'content': message.body})
        else:
            name = sender.display_name if sender is not None else 'Unknown'
            turns.append({'role': 'user', 'content': f"{name}: {message.body}"})
    return turns

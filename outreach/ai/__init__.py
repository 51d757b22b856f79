from outreach.ai.actions import Action, parse_action
from outreach.ai.responder import LanguageResponder, ResponderError

__all__ = ["Action", "parse_action", "LanguageResponder", "ResponderError"]

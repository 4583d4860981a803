"""Well-known domain event types. Handlers may subscribe to any string; these are the ones the backend emits."""


class EventTypes:
    """Domain event type tags."""

    # User lifecycle
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    USER_ACTIVATED = "USER_ACTIVATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    USER_ONBOARDING_COMPLETED = "USER_ONBOARDING_COMPLETED"
    USER_FOCUS_AREA_SET = "USER_FOCUS_AREA_SET"

    # Personality assessment
    PERSONALITY_PROFILE_UPDATED = "PERSONALITY_PROFILE_UPDATED"
    PERSONALITY_PROFILE_DELETED = "PERSONALITY_PROFILE_DELETED"

    # Challenges and evaluations
    CHALLENGE_CREATED = "CHALLENGE_CREATED"
    CHALLENGE_COMPLETED = "CHALLENGE_COMPLETED"
    CHALLENGE_DELETED = "CHALLENGE_DELETED"
    EVALUATION_CREATED = "EVALUATION_CREATED"
    EVALUATION_COMPLETED = "EVALUATION_COMPLETED"
    FOCUS_AREAS_GENERATED = "FOCUS_AREAS_GENERATED"

    # Gamification
    PROGRESS_UPDATED = "PROGRESS_UPDATED"
    ACHIEVEMENT_UNLOCKED = "ACHIEVEMENT_UNLOCKED"


# Payload contracts (documentation). Every payload carries entity_id and entity_type.
EVALUATION_COMPLETED_PAYLOAD = {
    "entity_id": "str",
    "entity_type": "str",
    "user_id": "str",
    "challenge_id": "str",
    "score": "float",
}
CHALLENGE_COMPLETED_PAYLOAD = {
    "entity_id": "str",
    "entity_type": "str",
    "user_id": "str",
    "challenge_id": "str",
}
PROGRESS_UPDATED_PAYLOAD = {"entity_id": "str", "entity_type": "str", "user_id": "str"}

from enum import StrEnum


class GroqModel(StrEnum):
    LLAMA_33_70B = "groq/llama-3.3-70b-versatile"
    LLAMA_31_8B = "groq/llama-3.1-8b-instant"


DEFAULT_MODEL = GroqModel.LLAMA_33_70B

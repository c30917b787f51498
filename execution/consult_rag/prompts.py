"""
Prompt templates for legal consultations (Russian).
"""

LEGAL_AREAS = (
    "consumer-rights",
    "labor-law",
    "civil-law",
    "criminal-law",
    "family-law",
    "tax-law",
    "general",
)

SYSTEM_PROMPT = """Вы - опытный юрист-консультант. Ответьте на вопрос пользователя, используя предоставленные правовые источники.

Инструкции:
1. Дайте четкий и понятный ответ
2. Ссылайтесь на конкретные статьи законов
3. Предложите практические шаги
4. Укажите возможные риски
5. Если информации недостаточно, честно об этом скажите"""

LEGAL_AREA_INSTRUCTIONS = {
    "consumer-rights": "Специализируйтесь на защите прав потребителей. Ссылайтесь на ЗоЗПП, ГК РФ.",
    "labor-law": "Специализируйтесь на трудовом праве. Ссылайтесь на ТК РФ, постановления правительства.",
    "civil-law": "Специализируйтесь на гражданском праве. Ссылайтесь на ГК РФ, судебную практику.",
    "criminal-law": "Специализируйтесь на уголовном праве. Ссылайтесь на УК РФ, УПК РФ.",
    "family-law": "Специализируйтесь на семейном праве. Ссылайтесь на СК РФ, судебную практику.",
    "tax-law": "Специализируйтесь на налоговом праве. Ссылайтесь на НК РФ, разъяснения ФНС.",
    "general": "Используйте общие принципы права и актуальное законодательство РФ.",
}

NO_SOURCES_NOTE = (
    "Релевантные источники в базе знаний не найдены. "
    "Отвечайте на основе общих норм права РФ и прямо укажите, что ответ не подкреплен источниками."
)


def legal_area_instructions(legal_area: str = None) -> str:
    return LEGAL_AREA_INSTRUCTIONS.get(legal_area or "general", LEGAL_AREA_INSTRUCTIONS["general"])


def build_system_prompt(legal_area: str = None) -> str:
    return f"{SYSTEM_PROMPT}\n\n{legal_area_instructions(legal_area)}"


def build_context(sources: list, additional_context: str = None) -> str:
    """Numbered source list in the given order (callers pass descending relevance)."""
    if not sources:
        context = NO_SOURCES_NOTE + "\n\n"
    else:
        context = "Релевантные правовые источники:\n\n"
        for index, source in enumerate(sources, start=1):
            context += f"{index}. {source.title} ({source.type})\n{source.content}\n\n"

    if additional_context:
        context += f"Дополнительный контекст:\n{additional_context}\n\n"
    return context


def build_user_prompt(question: str, context: str) -> str:
    return f"{context}Вопрос: {question}\n\nОтвет:"

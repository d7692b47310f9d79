"""
Versioned registry of semantic categories.

Eleven fixed categories cover the everyday topics of a user's life; five
dynamic slots (``ai_dynamic_1`` .. ``ai_dynamic_5``) can be filled at
runtime.  Every registration bumps :attr:`CategoryRegistry.version`.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

#: Storage-side token ceiling per (user, category).
DEFAULT_TOKEN_CEILING: int = 50_000

#: Number of runtime-created category slots.
DYNAMIC_SLOTS: int = 5

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"


@dataclass
class CategoryDefinition:
    name: str
    keywords: frozenset[str]
    patterns: tuple[re.Pattern, ...]
    topics: frozenset[str] = frozenset()
    priority: str = PRIORITY_MEDIUM
    token_ceiling: int = DEFAULT_TOKEN_CEILING
    description: str = ""
    dynamic: bool = False

    @classmethod
    def build(
        cls,
        name: str,
        keywords: str,
        patterns: list[str],
        topics: str = "",
        priority: str = PRIORITY_MEDIUM,
        description: str = "",
        token_ceiling: int = DEFAULT_TOKEN_CEILING,
        dynamic: bool = False,
    ) -> "CategoryDefinition":
        """Build a definition from whitespace/comma separated word lists."""
        return cls(
            name=name,
            keywords=_word_set(keywords),
            patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
            topics=_word_set(topics),
            priority=priority,
            token_ceiling=token_ceiling,
            description=description,
            dynamic=dynamic,
        )


def _word_set(words: str) -> frozenset[str]:
    return frozenset(w.strip().lower() for w in words.split(",") if w.strip())


FIXED_CATEGORIES: tuple[CategoryDefinition, ...] = (
    CategoryDefinition.build(
        "mental_emotional",
        "stress, stressed, anxious, anxiety, worried, worry, feel, feeling, felt, emotion, "
        "emotional, mood, mental, psychology, therapy, therapist, counseling, mindset, attitude, "
        "overwhelmed, depressed, depression, panic, fear, confidence, self-esteem, lonely",
        [
            r"\b(i feel|feeling|stressed|worried|anxious|emotional|mood|mental health|overwhelmed)\b",
            r"\b(therapy|therapist|counseling|psychology|mindset|attitude)\b",
            r"\b(depressed|depression|panic|fear|self-esteem|self-worth|lonely)\b",
        ],
        topics="emotions, feelings, stress, anxiety, mood, therapy",
        priority=PRIORITY_HIGH,
        description="feelings, stress, mood and mental health",
    ),
    CategoryDefinition.build(
        "health_wellness",
        "health, healthy, medical, doctor, physician, symptom, symptoms, pain, illness, sick, "
        "disease, medication, medicine, treatment, diagnosis, fitness, exercise, workout, gym, "
        "diet, nutrition, sleep, tired, fatigue, hospital, clinic, allergy, allergic, allergies",
        [
            r"\b(health|medical|doctor|symptom|pain|illness|medication|fitness|exercise)\b",
            r"\b(diet|nutrition|sleep|hospital|clinic|treatment|diagnosis)\b",
            r"\b(workout|gym|wellness|allerg(?:y|ic|ies))\b",
        ],
        topics="health, body, medicine, fitness, food, allergy, sleep",
        priority=PRIORITY_HIGH,
        description="physical health, fitness, diet and medical facts",
    ),
    CategoryDefinition.build(
        "relationships_social",
        "family, spouse, husband, wife, partner, relationship, marriage, married, boyfriend, "
        "girlfriend, children, child, kids, son, daughter, parents, mother, father, mom, dad, "
        "brother, sister, cousin, uncle, aunt, friend, friends, colleague, coworker, neighbor, "
        "dating, divorce, pet, pets, dog, cat",
        [
            r"\b(family|spouse|husband|wife|partner|relationship|marriage|children|kids)\b",
            r"\b(parents|mother|father|mom|dad|brother|sister|cousin|friend|dating)\b",
            r"\b(divorce|breakup|pets?|dog|cat|neighbou?r)\b",
        ],
        topics="people, family, friends, relatives, pets",
        priority=PRIORITY_HIGH,
        description="family, friends and the people in the user's life",
    ),
    CategoryDefinition.build(
        "work_career",
        "work, working, job, career, profession, business, company, office, workplace, project, "
        "meeting, boss, manager, supervisor, employee, colleague, coworker, team, department, "
        "salary, promotion, performance, deadline, client, customer, interview, employer",
        [
            r"\b(work|job|career|business|company|office|meeting|boss|employer)\b",
            r"\b(employee|colleague|coworker|team|promotion|performance|client)\b",
            r"\b(interview|workplace|profession|manager|supervisor)\b",
        ],
        topics="work, career, company, colleagues, meetings",
        priority=PRIORITY_MEDIUM,
        description="jobs, employers, colleagues and meetings",
    ),
    CategoryDefinition.build(
        "money_income_debt",
        "income, salary, wage, wages, paycheck, earnings, debt, loan, loans, credit, mortgage, "
        "payment, payments, bill, bills, owe, broke, bankruptcy, raise",
        [
            r"\b(income|salary|wages?|paycheck|earnings|debt|loans?|credit)\b",
            r"\b(mortgage|payments?|bills?|owe|broke)\b",
            r"\b(bankruptcy|foreclosure|financial trouble)\b",
        ],
        topics="money, income, salary, debt",
        priority=PRIORITY_HIGH,
        description="income, salary and debt",
    ),
    CategoryDefinition.build(
        "money_spending_goals",
        "budget, budgeting, spending, spend, purchase, buy, buying, savings, save, saving, "
        "investment, investing, stocks, portfolio, wealth, price, prices, pricing, cost, costs, "
        "plan, plans, subscription, expensive, cheap",
        [
            r"\b(budget|spending|purchase|buy|savings|save|investment|investing)\b",
            r"\b(stocks|portfolio|wealth|prices?|pricing|costs?|subscription)\b",
            r"\$\s?\d",
        ],
        topics="money, prices, spending, savings, plans",
        priority=PRIORITY_MEDIUM,
        description="spending, prices, purchases and savings",
    ),
    CategoryDefinition.build(
        "goals_active_current",
        "goal, goals, objective, target, aim, working on, trying to, task, this week, "
        "this month, priority, focus, achievement, accomplish, complete, finish",
        [
            r"\b(goals?|objective|target|working on|trying to)\b",
            r"\b(this week|this month|priority|focus|accomplish)\b",
            r"\b(complete|finish|task)\b",
        ],
        topics="goals, tasks, priorities",
        priority=PRIORITY_MEDIUM,
        description="current goals and active tasks",
    ),
    CategoryDefinition.build(
        "goals_future_dreams",
        "dream, dreams, someday, future, long-term, vision, aspiration, bucket list, hope, "
        "wish, want to, plan to, eventually, retirement, legacy, ambition",
        [
            r"\b(dream|someday|future|long-term|vision|aspiration|bucket list)\b",
            r"\b(hope|wish|want to|plan to|eventually|retirement|legacy)\b",
        ],
        topics="dreams, future, ambitions, retirement",
        priority=PRIORITY_LOW,
        description="long-term dreams and aspirations",
    ),
    CategoryDefinition.build(
        "tools_tech_workflow",
        "software, app, application, tool, tools, technology, tech, system, platform, website, "
        "computer, laptop, phone, workflow, automation, productivity, program, code, coding, python",
        [
            r"\b(software|app|tool|technology|platform|website)\b",
            r"\b(computer|laptop|workflow|automation|productivity)\b",
            r"\b(program|programming|application|code|coding)\b",
        ],
        topics="software, tools, computers, code",
        priority=PRIORITY_LOW,
        description="software, devices and workflows",
    ),
    CategoryDefinition.build(
        "daily_routines_habits",
        "routine, routines, habit, habits, daily, morning, evening, night, schedule, weekly, "
        "ritual, practice, discipline, every day",
        [
            r"\b(routine|habit|daily|morning|evening|schedule)\b",
            r"\b(every day|weekly|ritual|practice|discipline)\b",
        ],
        topics="routines, habits, schedule",
        priority=PRIORITY_MEDIUM,
        description="routines, habits and schedules",
    ),
    CategoryDefinition.build(
        "personal_life_interests",
        "home, house, apartment, lifestyle, personal, hobby, hobbies, interest, interests, "
        "fun, leisure, gaming, games, art, music, reading, books, movies, travel, vacation, "
        "sports, cooking, food, garden, gardening, favorite, favourite",
        [
            r"\b(home|house|apartment|lifestyle|hobby|entertainment)\b",
            r"\b(gaming|art|music|reading|movies|travel|vacation|sports)\b",
            r"\b(cooking|garden|leisure|favou?rite)\b",
        ],
        topics="hobbies, interests, home, travel, food",
        priority=PRIORITY_LOW,
        description="hobbies, interests, home life and preferences",
    ),
)


class CategoryRegistry:
    """
    The category vocabulary shared by writes and reads.

    Parameters
    ----------
    fixed:
        Fixed category definitions.
    dynamic_slots:
        Number of runtime categories allowed.
    token_ceiling:
        Per-category token ceiling applied to every category.
    """

    def __init__(
        self,
        fixed: tuple[CategoryDefinition, ...] = FIXED_CATEGORIES,
        dynamic_slots: int = DYNAMIC_SLOTS,
        token_ceiling: int = DEFAULT_TOKEN_CEILING,
    ) -> None:
        self._lock = threading.Lock()
        self._categories: dict[str, CategoryDefinition] = {
            c.name: replace(c, token_ceiling=token_ceiling) for c in fixed
        }
        self.dynamic_slots = dynamic_slots
        self.token_ceiling = token_ceiling
        self.version = 1

    def __contains__(self, name: object) -> bool:
        return name in self._categories

    def __len__(self) -> int:
        return len(self._categories)

    def get(self, name: str) -> CategoryDefinition:
        return self._categories[name]

    def all(self) -> list[CategoryDefinition]:
        with self._lock:
            return list(self._categories.values())

    def names(self) -> list[str]:
        return [c.name for c in self.all()]

    def dynamic(self) -> list[CategoryDefinition]:
        return [c for c in self.all() if c.dynamic]

    def register_dynamic(
        self,
        keywords: list[str],
        patterns: list[str] | None = None,
        topics: list[str] | None = None,
        description: str = "",
        priority: str = PRIORITY_MEDIUM,
        name: str | None = None,
    ) -> CategoryDefinition:
        """
        Fill the next free ``ai_dynamic_N`` slot and return its definition.

        *name* claims a specific free slot instead, which is how saved
        categories are restored.  Raises :class:`ValueError` when every
        slot is taken, the named slot is unknown or taken, or no keyword
        is given.
        """
        if not keywords:
            raise ValueError("a dynamic category needs at least one keyword")
        with self._lock:
            used = {c.name for c in self._categories.values() if c.dynamic}
            free = [
                f"ai_dynamic_{i}"
                for i in range(1, self.dynamic_slots + 1)
                if f"ai_dynamic_{i}" not in used
            ]
            if not free:
                raise ValueError(f"all {self.dynamic_slots} dynamic category slots are in use")
            if name is not None and name not in free:
                raise ValueError(f"{name!r} is not a free dynamic category slot")
            definition = CategoryDefinition.build(
                name or free[0],
                ", ".join(keywords),
                list(patterns or []),
                topics=", ".join(topics or []),
                priority=priority,
                description=description,
                token_ceiling=self.token_ceiling,
                dynamic=True,
            )
            self._categories[definition.name] = definition
            self.version += 1
        logger.info("registered %s (registry version %d)", definition.name, self.version)
        return definition

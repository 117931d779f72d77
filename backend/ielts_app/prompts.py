from __future__ import annotations
from typing import Dict, Tuple
from .scoring import EvaluationLayout, SPEAKING_LAYOUT, WRITING_TASK1_LAYOUT, WRITING_TASK2_LAYOUT


SPEAKING_QUESTION_PROMPTS: Dict[int, Tuple[str, str]] = {
	1: (
		"You are an IELTS examiner conducting Speaking Part 1. Generate a realistic question about familiar topics like work, studies, hometown, interests, etc.",
		"Generate a new IELTS Speaking Part 1 question. Make it realistic and engaging.",
	),
	2: (
		"You are an IELTS examiner conducting Speaking Part 2. Generate a realistic cue card with a topic and specific points to cover.",
		"Generate a new IELTS Speaking Part 2 cue card. Include the topic and 3-4 specific points to address. Make it realistic and challenging.",
	),
	3: (
		"You are an IELTS examiner conducting Speaking Part 3. Generate a realistic discussion question related to Part 2 topics.",
		"Generate a new IELTS Speaking Part 3 discussion question. Make it realistic and thought-provoking.",
	),
}

TASK1_CHART_SYSTEM = (
	"Generate IELTS Academic Writing Task 1 data. Create realistic data for a chart/graph with specific numbers, "
	"categories, and time periods. Include the type of chart (bar chart, line graph, pie chart, table, etc.) and all necessary details."
)
TASK1_CHART_USER = (
	"Generate detailed data for an IELTS Task 1 visual (chart/graph/table) with specific numbers, categories, "
	"time periods, and clear trends for analysis."
)
TASK1_PROMPT_SYSTEM = (
	"You are an IELTS examiner. Create the official IELTS Academic Writing Task 1 instructions based on the provided "
	"chart data. Use the standard IELTS format and language."
)
TASK2_PROMPT_SYSTEM = (
	"You are an IELTS examiner. Generate a realistic IELTS Academic Writing Task 2 essay prompt. The prompt should present "
	"a clear argumentative topic, provide context, and include specific instructions. It should be exactly like real IELTS "
	"exams with the 250-word minimum requirement."
)
TASK2_PROMPT_USER = (
	"Generate a complete IELTS Writing Task 2 (Academic) essay prompt about a contemporary social, environmental, or "
	"educational issue that requires students to present and justify an opinion."
)

# Rubric bullet points per criterion label
_RUBRICS: Dict[str, str] = {
	"TASK_ACHIEVEMENT": """- Addresses all requirements of the task
- Presents clear overview of main trends/features
- Accurately reports data
- Makes appropriate comparisons""",
	"TASK_RESPONSE": """- Fully addresses all parts of the task
- Presents clear position throughout
- Presents, extends and supports ideas
- Relevant examples and evidence""",
	"COHERENCE_COHESION": """- Logical organization of information and ideas
- Clear progression throughout
- Appropriate use of cohesive devices
- Clear paragraphing""",
	"LEXICAL_RESOURCE": """- Wide range of vocabulary
- Natural, precise and accurate word choice
- Correct spelling and word formation""",
	"GRAMMATICAL_RANGE": """- Wide range of structures
- Majority of sentences are error-free
- Good control of grammar and punctuation""",
	"FLUENCY_COHERENCE": """- Speaks at length without effort or loss of coherence
- Maintains flow despite occasional hesitations
- Logical organization of ideas
- Effective use of discourse markers""",
	"PRONUNCIATION": """- Clear and intelligible pronunciation
- Effective use of intonation and stress
- Minimal L1 interference""",
}


def build_task1_chart_image_prompt(chart_data: str) -> str:
	return (
		f"Create a clean, professional IELTS Academic Writing Task 1 chart/graph based on this data: {chart_data}. "
		"Make it look like an official IELTS exam chart with clear labels, numbers, axes, and title. "
		"Use a simple, academic style with black text on white background."
	)


def build_task1_prompt_request(chart_data: str) -> str:
	return (
		f"Create an official IELTS Writing Task 1 prompt for this chart: {chart_data}. Include the standard instructions: "
		"\"You should spend about 20 minutes on this task. The chart/graph shows... Summarise the information by selecting "
		"and reporting the main features, and make comparisons where relevant. Write at least 150 words.\""
	)


def build_examiner_system_prompt(test_name: str, layout: EvaluationLayout) -> str:
	sections = []
	for i, spec in enumerate(layout.criteria, start=1):
		sections.append(f"{i}. {spec.title.upper()} (25%):\n{_RUBRICS.get(spec.label, '')}")
	rubric = "\n\n".join(sections)
	return (
		f"You are an official IELTS examiner evaluating {test_name}. "
		f"Provide detailed scoring for each of the {len(layout.criteria)} assessment criteria:\n\n"
		f"{rubric}\n\n"
		f"{layout.format_instructions()}"
	)


def writing_system_prompt(task: int) -> str:
	layout = WRITING_TASK1_LAYOUT if task == 1 else WRITING_TASK2_LAYOUT
	return build_examiner_system_prompt(f"Writing Task {task} (Academic)", layout)


def writing_user_prompt(task: int, response: str, prompt: str) -> str:
	return f"""Evaluate this IELTS Writing Task {task} response:

PROMPT: {prompt}

RESPONSE: {response}

Provide detailed scoring for each criterion with specific examples from the text."""


def speaking_system_prompt(part: int) -> str:
	return build_examiner_system_prompt(f"Speaking Part {part} responses", SPEAKING_LAYOUT)


def speaking_user_prompt(part: int, response: str, question: str) -> str:
	return f"""Evaluate this IELTS Speaking Part {part} response:

QUESTION: {question}

RESPONSE: {response}

Provide detailed scoring for each criterion with specific examples from the speech."""

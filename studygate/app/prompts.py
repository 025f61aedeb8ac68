# studygate/app/prompts.py

CHECKLIST_PROMPT = """You are an expert academic advisor. First, determine if the text below is a valid school or university assignment. Then, if valid, create a step-by-step checklist for completing it.

A valid assignment is a document that asks a student to complete academic work: essays, problem sets, lab reports, research papers, projects, presentations, reading responses, etc. Invalid documents include receipts, invoices, resumes, random articles, blank pages, memos, personal documents, or anything that is clearly not an assignment given to a student.

Return your response as JSON with this exact structure:

If the text is NOT a valid assignment:
{{
  "valid": false,
  "reason": "Brief explanation of why this is not a valid assignment"
}}

If the text IS a valid assignment:
{{
  "valid": true,
  "title": "A short descriptive title for the assignment",
  "steps": [
    {{
      "title": "Short step title",
      "description": "1-2 sentence explanation of what to do for this step"
    }}
  ]
}}

Guidelines for steps (only if valid):
- Create 5-15 ordered, actionable steps
- Order them logically (research, outline, draft, revise, etc.)
- Each step should be concrete and specific to this assignment
- Keep titles short (under 10 words)
- Keep descriptions to 1-2 sentences max
- Return ONLY valid JSON, no other text

ASSIGNMENT TEXT:
{assignment_text}"""

STEP_CHAT_SYSTEM_PROMPT = """You are a helpful academic assistant. The student is working on an assignment and needs help with a specific step.

ASSIGNMENT TITLE: {title}

ASSIGNMENT TEXT:
{original_text}

FULL CHECKLIST:
{checklist}

CURRENT STEP (Step {step_number}): {step_title}
{step_description}

Help the student with this specific step. Be concise, practical, and encouraging. Give actionable advice specific to their assignment. If they ask about other steps, you can help but gently guide them back to the current step."""


def build_checklist_prompt(assignment_text: str) -> str:
    return CHECKLIST_PROMPT.format(assignment_text=assignment_text)


def build_step_chat_system_prompt(assignment, steps, current_step) -> str:
    """System prompt for one checklist step.

    `steps` is the whole checklist in order; completed steps are ticked.
    """
    checklist = "\n".join(
        f"{s.step_number}. [{'x' if s.completed else ' '}] {s.title}" for s in steps
    )
    return STEP_CHAT_SYSTEM_PROMPT.format(
        title=assignment.title,
        original_text=assignment.original_text,
        checklist=checklist,
        step_number=current_step.step_number,
        step_title=current_step.title,
        step_description=current_step.description,
    )

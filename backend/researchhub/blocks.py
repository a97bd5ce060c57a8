"""Registry of study block types.

Each block type carries display metadata, default settings and a
pydantic model that validates researcher-supplied settings. The
registry is the single place studies and templates go through when
blocks are created or edited, so stored block settings are always in
normalized form.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, HttpUrl, ValidationError, model_validator

DEFAULT_BLOCK_DURATION = 30


class WelcomeScreenSettings(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    show_continue_button: bool = True
    button_text: Optional[str] = Field(default=None, max_length=50)


class OpenQuestionSettings(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    placeholder: Optional[str] = Field(default=None, max_length=200)
    required: bool = True
    min_length: Optional[int] = Field(default=None, ge=0, le=10000)
    max_length: Optional[int] = Field(default=None, ge=1, le=10000)
    enable_ai_followup: bool = False

    @model_validator(mode='after')
    def _check_lengths(self):
        if self.min_length is not None and self.max_length is not None and self.min_length > self.max_length:
            raise ValueError('min_length must not exceed max_length')
        return self


class OpinionScaleSettings(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    scale_type: Literal['stars', 'numbers', 'emotions'] = 'stars'
    min_value: int = Field(default=1, ge=0, le=10)
    max_value: int = Field(default=5, ge=1, le=10)
    required: bool = True
    show_labels: bool = True
    min_label: Optional[str] = Field(default=None, max_length=50)
    max_label: Optional[str] = Field(default=None, max_length=50)

    @model_validator(mode='after')
    def _check_range(self):
        if self.min_value >= self.max_value:
            raise ValueError('min_value must be lower than max_value')
        return self


class SimpleInputSettings(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    input_type: Literal['text', 'number', 'email', 'date', 'url', 'tel'] = 'text'
    placeholder: Optional[str] = Field(default=None, max_length=200)
    required: bool = True
    validation: Optional[str] = None


class MultipleChoiceSettings(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    options: List[str] = Field(min_length=2, max_length=20)
    allow_multiple: bool = False
    required: bool = True
    randomize_options: bool = False

    @model_validator(mode='after')
    def _check_options(self):
        for opt in self.options:
            if not opt.strip() or len(opt) > 200:
                raise ValueError('each option must be 1-200 characters')
        return self


class ContextScreenSettings(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1, max_length=5000)
    show_continue_button: bool = True
    button_text: Optional[str] = Field(default=None, max_length=50)


class YesNoSettings(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    yes_label: str = Field(default='Yes', max_length=50)
    no_label: str = Field(default='No', max_length=50)
    required: bool = True
    show_icons: bool = True


class FiveSecondTestSettings(BaseModel):
    instruction: str = Field(min_length=1, max_length=500)
    image_url: HttpUrl
    display_duration: int = Field(default=5000, ge=1000, le=30000)
    follow_up_question: Optional[str] = Field(default=None, min_length=1, max_length=500)
    enable_recall: bool = True


class CardSortSettings(BaseModel):
    instruction: str = Field(min_length=1, max_length=500)
    items: List[str] = Field(min_length=3, max_length=50)
    categories: List[str] = Field(default_factory=list, max_length=20)
    allow_new_categories: bool = True
    max_categories: int = Field(default=10, ge=1, le=20)


class TreeTestSettings(BaseModel):
    instruction: str = Field(min_length=1, max_length=500)
    task: str = Field(min_length=1, max_length=500)
    tree: dict = Field(default_factory=dict)
    allow_backtracking: bool = True
    show_path: bool = False


class ThankYouSettings(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    show_next_steps: bool = False
    next_steps: Optional[str] = Field(default=None, max_length=1000)
    show_contact_info: bool = False
    contact_info: Optional[str] = Field(default=None, max_length=500)


class ImageUploadSettings(BaseModel):
    instruction: str = Field(min_length=1, max_length=500)
    allowed_formats: List[str] = Field(default_factory=lambda: ['jpg', 'jpeg', 'png'])
    max_file_size: int = Field(default=5 * 1024 * 1024, ge=1024, le=52428800)
    required: bool = True
    allow_multiple: bool = False
    max_files: int = Field(default=1, ge=1, le=10)


class FileUploadSettings(BaseModel):
    instruction: str = Field(min_length=1, max_length=500)
    allowed_formats: List[str] = Field(default_factory=lambda: ['pdf', 'doc', 'docx'])
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1024, le=104857600)
    required: bool = True
    allow_multiple: bool = False
    max_files: int = Field(default=1, ge=1, le=10)


@dataclass(frozen=True)
class BlockMetadata:
    display_name: str
    description: str
    category: str
    estimated_duration: int
    complexity: str
    requires_interaction: bool
    settings_model: Type[BaseModel]
    default_settings: Dict = field(default_factory=dict)

    def to_dict(self, block_type: str) -> dict:
        return {
            'type': block_type,
            'display_name': self.display_name,
            'description': self.description,
            'category': self.category,
            'estimated_duration': self.estimated_duration,
            'complexity': self.complexity,
            'requires_interaction': self.requires_interaction,
            'default_settings': dict(self.default_settings),
        }


BLOCK_REGISTRY: Dict[str, BlockMetadata] = {
    'welcome_screen': BlockMetadata(
        display_name='Welcome Screen',
        description='Study introduction and participant onboarding',
        category='display',
        estimated_duration=30,
        complexity='simple',
        requires_interaction=False,
        settings_model=WelcomeScreenSettings,
        default_settings={
            'title': 'Welcome to our study',
            'message': 'Thank you for participating in our research study.',
            'show_continue_button': True,
            'button_text': 'Get Started',
        },
    ),
    'open_question': BlockMetadata(
        display_name='Open Question',
        description='Qualitative data collection with free-text answers',
        category='input',
        estimated_duration=120,
        complexity='moderate',
        requires_interaction=True,
        settings_model=OpenQuestionSettings,
        default_settings={
            'question': 'Please share your thoughts...',
            'placeholder': 'Type your response here...',
            'required': True,
            'min_length': 10,
            'max_length': 1000,
            'enable_ai_followup': False,
        },
    ),
    'opinion_scale': BlockMetadata(
        display_name='Opinion Scale',
        description='Quantitative ratings using numerical, star, or emotion scales',
        category='input',
        estimated_duration=15,
        complexity='simple',
        requires_interaction=True,
        settings_model=OpinionScaleSettings,
        default_settings={
            'question': 'How would you rate this?',
            'scale_type': 'stars',
            'min_value': 1,
            'max_value': 5,
            'required': True,
            'show_labels': True,
            'min_label': 'Poor',
            'max_label': 'Excellent',
        },
    ),
    'simple_input': BlockMetadata(
        display_name='Simple Input',
        description='Structured data collection (text, number, date, email)',
        category='input',
        estimated_duration=30,
        complexity='simple',
        requires_interaction=True,
        settings_model=SimpleInputSettings,
        default_settings={
            'question': 'Please provide your input',
            'input_type': 'text',
            'placeholder': '',
            'required': True,
            'validation': None,
        },
    ),
    'multiple_choice': BlockMetadata(
        display_name='Multiple Choice',
        description='Single or multiple selection from predefined options',
        category='input',
        estimated_duration=20,
        complexity='simple',
        requires_interaction=True,
        settings_model=MultipleChoiceSettings,
        default_settings={
            'question': 'Which option do you prefer?',
            'options': ['Option 1', 'Option 2', 'Option 3'],
            'allow_multiple': False,
            'required': True,
            'randomize_options': False,
        },
    ),
    'context_screen': BlockMetadata(
        display_name='Context Screen',
        description='Instructions and transitional information',
        category='display',
        estimated_duration=45,
        complexity='simple',
        requires_interaction=False,
        settings_model=ContextScreenSettings,
        default_settings={
            'title': 'Instructions',
            'content': 'Please read the following information carefully.',
            'show_continue_button': True,
            'button_text': 'Continue',
        },
    ),
    'yes_no': BlockMetadata(
        display_name='Yes/No Question',
        description='Binary decision with optional icon display',
        category='input',
        estimated_duration=10,
        complexity='simple',
        requires_interaction=True,
        settings_model=YesNoSettings,
        default_settings={
            'question': 'Do you agree?',
            'yes_label': 'Yes',
            'no_label': 'No',
            'required': True,
            'show_icons': True,
        },
    ),
    'five_second_test': BlockMetadata(
        display_name='5-Second Test',
        description='First impression and memory testing',
        category='interaction',
        estimated_duration=45,
        complexity='complex',
        requires_interaction=True,
        settings_model=FiveSecondTestSettings,
        default_settings={
            'instruction': 'Look at the following image for 5 seconds.',
            'image_url': 'https://example.com/placeholder.png',
            'display_duration': 5000,
            'follow_up_question': 'What do you remember?',
            'enable_recall': True,
        },
    ),
    'card_sort': BlockMetadata(
        display_name='Card Sort',
        description='Information architecture and categorization testing',
        category='interaction',
        estimated_duration=300,
        complexity='complex',
        requires_interaction=True,
        settings_model=CardSortSettings,
        default_settings={
            'instruction': 'Sort these items into groups that make sense to you.',
            'items': ['Item 1', 'Item 2', 'Item 3'],
            'categories': [],
            'allow_new_categories': True,
            'max_categories': 10,
        },
    ),
    'tree_test': BlockMetadata(
        display_name='Tree Test',
        description='Navigation and findability evaluation',
        category='interaction',
        estimated_duration=180,
        complexity='complex',
        requires_interaction=True,
        settings_model=TreeTestSettings,
        default_settings={
            'instruction': 'Find where you would expect this information.',
            'task': 'Where would you find this?',
            'tree': {},
            'allow_backtracking': True,
            'show_path': False,
        },
    ),
    'thank_you': BlockMetadata(
        display_name='Thank You',
        description='Study completion and appreciation message',
        category='completion',
        estimated_duration=15,
        complexity='simple',
        requires_interaction=False,
        settings_model=ThankYouSettings,
        default_settings={
            'title': 'Thank You!',
            'message': 'Thank you for participating in our study.',
            'show_next_steps': False,
            'next_steps': '',
            'show_contact_info': False,
            'contact_info': '',
        },
    ),
    'image_upload': BlockMetadata(
        display_name='Image Upload',
        description='Visual content collection from participants',
        category='media',
        estimated_duration=60,
        complexity='moderate',
        requires_interaction=True,
        settings_model=ImageUploadSettings,
        default_settings={
            'instruction': 'Please upload an image.',
            'allowed_formats': ['jpg', 'jpeg', 'png'],
            'max_file_size': 5 * 1024 * 1024,
            'required': True,
            'allow_multiple': False,
            'max_files': 1,
        },
    ),
    'file_upload': BlockMetadata(
        display_name='File Upload',
        description='Document and file collection',
        category='media',
        estimated_duration=90,
        complexity='moderate',
        requires_interaction=True,
        settings_model=FileUploadSettings,
        default_settings={
            'instruction': 'Please upload a document.',
            'allowed_formats': ['pdf', 'doc', 'docx'],
            'max_file_size': 10 * 1024 * 1024,
            'required': True,
            'allow_multiple': False,
            'max_files': 1,
        },
    ),
}

BLOCK_CATEGORIES = ('display', 'input', 'interaction', 'completion', 'media')
UPLOAD_BLOCK_TYPES = ('image_upload', 'file_upload')


def all_block_types() -> List[str]:
    return list(BLOCK_REGISTRY.keys())


def get_metadata(block_type: str) -> Optional[BlockMetadata]:
    return BLOCK_REGISTRY.get(block_type)


def blocks_by_category(category: str) -> List[str]:
    return [t for t, meta in BLOCK_REGISTRY.items() if meta.category == category]


def default_settings(block_type: str) -> dict:
    meta = get_metadata(block_type)
    return dict(meta.default_settings) if meta else {}


def _format_errors(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()))
        msg = err.get('msg', 'invalid value')
        out.append(f"{loc}: {msg}" if loc else msg)
    return out


def validate_settings(block_type: str, settings: dict) -> dict:
    """Validate `settings` for `block_type` and return them normalized.

    Raises ValueError with a readable message for unknown block types or
    invalid settings.
    """
    meta = get_metadata(block_type)
    if not meta:
        raise ValueError(f"unknown block type: {block_type}")
    if not isinstance(settings, dict):
        raise ValueError('block settings must be an object')
    try:
        parsed = meta.settings_model.model_validate(settings)
    except ValidationError as exc:
        raise ValueError(f"invalid {block_type} settings: " + '; '.join(_format_errors(exc)))
    return parsed.model_dump(mode='json')


def create_block(block_type: str, overrides: Optional[dict] = None, title: Optional[str] = None,
                 description: Optional[str] = None) -> dict:
    """Build a normalized block dict from defaults merged with `overrides`."""
    meta = get_metadata(block_type)
    if not meta:
        raise ValueError(f"unknown block type: {block_type}")
    merged = {**meta.default_settings, **(overrides or {})}
    return {
        'type': block_type,
        'title': title or meta.display_name,
        'description': description if description is not None else meta.description,
        'settings': validate_settings(block_type, merged),
    }


def estimated_duration(block_types: List[str]) -> int:
    """Sum of estimated seconds; unknown types count as the default duration."""
    total = 0
    for t in block_types:
        meta = get_metadata(t)
        total += meta.estimated_duration if meta else DEFAULT_BLOCK_DURATION
    return total


def complexity_stats(block_types: List[str]) -> Dict[str, int]:
    stats = {'simple': 0, 'moderate': 0, 'complex': 0}
    for t in block_types:
        meta = get_metadata(t)
        if meta:
            stats[meta.complexity] += 1
    return stats


DISPLAY_BLOCK_TYPES = ('welcome_screen', 'context_screen', 'thank_you')
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_response(block_type: str, settings: dict, response: Any) -> None:
    """Check a participant response against the block's settings.

    Raises ValueError describing the first problem found. Display blocks
    and free-form interaction blocks (five second test, tree test) accept
    any payload.
    """
    if block_type in DISPLAY_BLOCK_TYPES or block_type in ('five_second_test', 'tree_test'):
        return
    required = settings.get('required', True)
    if block_type == 'open_question':
        if not isinstance(response, str):
            raise ValueError('open_question response must be text')
        text = response.strip()
        if required and not text:
            raise ValueError('response is required')
        max_len = settings.get('max_length')
        if max_len and len(text) > max_len:
            raise ValueError(f"response longer than {max_len} characters")
        min_len = settings.get('min_length')
        if min_len and text and len(text) < min_len:
            raise ValueError(f"response shorter than {min_len} characters")
        return
    if block_type == 'simple_input':
        _validate_simple_input(settings, response, required)
        return
    if block_type == 'multiple_choice':
        options = settings.get('options') or []
        picked = response if isinstance(response, list) else [response]
        if isinstance(response, list) and not settings.get('allow_multiple'):
            raise ValueError('only one option may be selected')
        if required and not picked:
            raise ValueError('response is required')
        for p in picked:
            if p not in options:
                raise ValueError(f"unknown option: {p}")
        return
    if block_type == 'opinion_scale':
        if isinstance(response, bool) or not isinstance(response, (int, float)):
            raise ValueError('opinion_scale response must be a number')
        if not math.isfinite(response):
            raise ValueError('opinion_scale response must be a finite number')
        lo, hi = settings.get('min_value', 1), settings.get('max_value', 5)
        if response < lo or response > hi:
            raise ValueError(f"rating must be between {lo} and {hi}")
        return
    if block_type == 'yes_no':
        if not isinstance(response, bool):
            raise ValueError('yes_no response must be true or false')
        return
    if block_type == 'card_sort':
        _validate_card_sort(settings, response)
        return
    if block_type in UPLOAD_BLOCK_TYPES:
        if not isinstance(response, dict) or not isinstance(response.get('files'), list):
            raise ValueError('upload response must contain a files list')
        return
    raise ValueError(f"unknown block type: {block_type}")


def _validate_simple_input(settings: dict, response: Any, required: bool) -> None:
    input_type = settings.get('input_type', 'text')
    if input_type == 'number':
        if isinstance(response, bool):
            raise ValueError('response must be a number')
        try:
            number = float(response)
        except (TypeError, ValueError):
            raise ValueError('response must be a number')
        if not math.isfinite(number):
            raise ValueError('response must be a finite number')
        return
    if not isinstance(response, str):
        raise ValueError('simple_input response must be text')
    text = response.strip()
    if not text:
        if required:
            raise ValueError('response is required')
        return
    if input_type == 'email' and not _EMAIL_RE.match(text):
        raise ValueError('response must be an email address')
    pattern = settings.get('validation')
    if pattern:
        try:
            matched = re.fullmatch(pattern, text)
        except re.error:
            matched = True
        if not matched:
            raise ValueError('response does not match the expected format')


def _validate_card_sort(settings: dict, response: Any) -> None:
    if not isinstance(response, dict) or not response:
        raise ValueError('card_sort response must map items to categories')
    items = set(settings.get('items') or [])
    categories = set(settings.get('categories') or [])
    used = set()
    for item, category in response.items():
        if item not in items:
            raise ValueError(f"unknown card: {item}")
        if not isinstance(category, str) or not category.strip():
            raise ValueError(f"card {item} has no category")
        if category not in categories and not settings.get('allow_new_categories', True):
            raise ValueError(f"unknown category: {category}")
        used.add(category)
    if len(used) > settings.get('max_categories', 10):
        raise ValueError('too many categories')

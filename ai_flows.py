"""
Gemini-backed prompt flows: translation, voting-pattern fraud analysis and
mock NIDA (National Identification Agency) identity verification.
"""
import json
import logging
import re
from datetime import date

import google.generativeai as genai
from pydantic import ValidationError

from config import Config
from errors import AIServiceError
from schemas import (
    FraudAnalysisInput,
    FraudAnalysisOutput,
    NidaVerificationInput,
    NidaVerificationOutput,
    TranslationInput,
    TranslationOutput,
)

logger = logging.getLogger(__name__)

NATIONAL_ID_RE = re.compile(r'[0-9]{16}')

LANGUAGE_NAMES = {'en': 'English', 'kin': 'Kinyarwanda', 'fr': 'French'}

RWANDA_DISTRICTS = {
    'gasabo', 'kicukiro', 'nyarugenge',
    'bugesera', 'gatsibo', 'kayonza', 'kirehe', 'ngoma', 'nyagatare', 'rwamagana',
    'burera', 'gakenke', 'gicumbi', 'musanze', 'rulindo',
    'gisagara', 'huye', 'kamonyi', 'muhanga', 'nyamagabe', 'nyanza', 'nyaruguru', 'ruhango',
    'karongi', 'ngororero', 'nyabihu', 'nyamasheke', 'rubavu', 'rusizi', 'rutsiro',
}

DEMO_NAMES = [
    "Mugisha Jean Claude",
    "Uwamahoro Marie",
    "Ntaganda Paul",
    "Mukeshimana Alice",
    "Hakizimana Emmanuel",
]

TRANSLATION_PROMPT = """Translate the following text to {language_name} ({language}):

{text}

Respond with a JSON object of the form {{"translatedText": "..."}}."""

FRAUD_PROMPT = """You are an expert in election fraud detection. Analyze the following voting data for any anomalies or suspicious patterns. Provide a summary of your findings and a list of any specific anomalies detected.

Voting Data:
{voting_data}

Output should be a JSON object with 'anomalies' and 'summary' fields."""

NIDA_SYSTEM_PROMPT = (
    "You are a citizen identity verification agent for the National Identification Agency (NIDA) of Rwanda. "
    "Your task is to use the provided tool to check if a national ID and date of birth are registered. "
    "If verification fails, you must provide the reason. Then format the output."
)

NIDA_PROMPT = """Verify this citizen.
National ID: {nationalId}
Date of birth: {dob}
District: {district}

If you cannot call the tool, answer with a JSON object with 'isValid', 'fullName' and 'reason' fields."""

_configured_key = None


def _api_key():
    return Config.GEMINI_API_KEY


def _model_name():
    return Config.GEMINI_MODEL


def _configure():
    global _configured_key
    api_key = _api_key()
    if not api_key:
        raise AIServiceError("GEMINI_API_KEY is not set; AI features are unavailable.")
    if api_key != _configured_key:
        genai.configure(api_key=api_key)
        _configured_key = api_key


def _json_model(system_instruction=None):
    _configure()
    return genai.GenerativeModel(
        model_name=_model_name(),
        system_instruction=system_instruction,
        generation_config=genai.GenerationConfig(response_mime_type='application/json'),
    )


def _strip_fences(text):
    text = text.strip()
    if text.startswith('```'):
        text = text.split('\n', 1)[1] if '\n' in text else ''
        if text.rstrip().endswith('```'):
            text = text.rstrip()[:-3]
    return text.strip()


def _response_text(response):
    try:
        text = response.text
    except ValueError:
        # Raised by the SDK when the candidate holds no text parts.
        return None
    return text or None


def translate_text(text, language):
    """Translates ``text`` into English, Kinyarwanda or French."""
    payload = TranslationInput(text=text, language=language)
    model = _json_model()
    response = model.generate_content(TRANSLATION_PROMPT.format(
        language=payload.language,
        language_name=LANGUAGE_NAMES[payload.language],
        text=payload.text,
    ))
    text = _response_text(response)
    if not text:
        raise AIServiceError("Empty translation response.")
    return TranslationOutput.model_validate_json(_strip_fences(text))


def analyze_voting_patterns(voting_data):
    """
    Asks the model for anomalies in ``voting_data`` (a JSON string).

    Returns a FraudAnalysisOutput with ``anomalies`` and ``summary``.
    """
    payload = FraudAnalysisInput(votingData=voting_data)
    model = _json_model()
    response = model.generate_content(FRAUD_PROMPT.format(voting_data=payload.votingData))
    text = _response_text(response)
    if not text:
        raise AIServiceError("Empty fraud analysis response.")
    return FraudAnalysisOutput.model_validate_json(_strip_fences(text))


def check_nida_database(nationalId, dob, district=None):
    """
    Mock NIDA registry lookup. Any 16-digit number is registered, provided
    digits 2-5 match the year of birth and the district (when given) is one
    of Rwanda's districts.
    """
    national_id = str(nationalId or '')
    if not NATIONAL_ID_RE.fullmatch(national_id):
        return {'isRegistered': False, 'reason': 'NOT_FOUND'}

    try:
        birth_year_from_dob = date.fromisoformat(str(dob).strip()[:10]).year
    except ValueError:
        return {'isRegistered': False, 'reason': 'ID_DOB_MISMATCH'}
    if int(national_id[1:5]) != birth_year_from_dob:
        return {'isRegistered': False, 'reason': 'ID_DOB_MISMATCH'}

    if district and district.strip().lower() not in RWANDA_DISTRICTS:
        return {'isRegistered': False, 'reason': 'INVALID_DISTRICT'}

    return {
        'isRegistered': True,
        'fullName': DEMO_NAMES[int(national_id[-1]) % len(DEMO_NAMES)],
        'reason': 'VALID',
    }


def _nida_tool():
    string_schema = genai.protos.Schema(type=genai.protos.Type.STRING)
    return genai.protos.Tool(function_declarations=[
        genai.protos.FunctionDeclaration(
            name='check_nida_database',
            description=(
                "Checks if a Rwandan National ID and Date of Birth (as YYYY-MM-DD string) match in a "
                "mock NIDA database. All 16-digit numbers are considered valid, the year of birth must "
                "match the one in the ID, and the district, when given, must be a Rwandan district."
            ),
            parameters=genai.protos.Schema(
                type=genai.protos.Type.OBJECT,
                properties={'nationalId': string_schema, 'dob': string_schema, 'district': string_schema},
                required=['nationalId', 'dob'],
            ),
        )
    ])


def _function_calls(response):
    for candidate in getattr(response, 'candidates', None) or []:
        content = getattr(candidate, 'content', None)
        for part in getattr(content, 'parts', None) or []:
            call = getattr(part, 'function_call', None)
            if call and getattr(call, 'name', None):
                yield call


def verify_national_id(national_id, dob, district=None):
    """
    Runs the NIDA verification prompt. When the model requests the registry
    tool, the tool's answer is authoritative; otherwise the model's own JSON
    answer is used, falling back to a SERVICE_ERROR result.
    """
    payload = NidaVerificationInput(nationalId=national_id, dob=dob, district=district or None)
    _configure()
    model = genai.GenerativeModel(
        model_name=_model_name(),
        system_instruction=NIDA_SYSTEM_PROMPT,
        tools=[_nida_tool()],
    )
    response = model.generate_content(NIDA_PROMPT.format(
        nationalId=payload.nationalId,
        dob=payload.dob,
        district=payload.district or 'not provided',
    ))

    for call in _function_calls(response):
        if call.name != 'check_nida_database':
            logger.warning("Model requested unknown tool %s", call.name)
            continue
        args = dict(call.args or {})
        # The registry is checked against the submitted values, not the model's echo of them.
        result = check_nida_database(payload.nationalId, payload.dob, payload.district or args.get('district'))
        return NidaVerificationOutput(
            isValid=result['isRegistered'],
            fullName=result.get('fullName'),
            reason=result.get('reason'),
        )

    text = _response_text(response)
    if text:
        try:
            return NidaVerificationOutput.model_validate_json(_strip_fences(text))
        except ValidationError:
            logger.warning("NIDA model answer did not match the output schema")
    return NidaVerificationOutput(isValid=False, reason='SERVICE_ERROR')


def export_votes(votes):
    """Serialises vote documents into the JSON shape the fraud prompt expects."""
    records = [
        {
            'voterId': v.get('nationalId'),
            'candidate': v.get('candidateName'),
            'groupId': v.get('groupId'),
            'timestamp': v.get('timestamp'),
        }
        for v in sorted(votes, key=lambda v: v.get('timestamp') or '')
    ]
    return json.dumps(records, indent=2)


SAMPLE_VOTING_DATA = json.dumps(
    [
        {"voterId": "V-1001", "candidate": "Candidate A"},
        {"voterId": "V-1002", "candidate": "Candidate B"},
        {"voterId": "V-1003", "candidate": "Candidate A"},
        {"voterId": "V-1004", "candidate": "Candidate A"},
        {"voterId": "V-1001", "candidate": "Candidate B"},
    ],
    indent=2,
)

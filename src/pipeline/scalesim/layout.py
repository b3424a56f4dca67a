"""Questionnaire layout: waves, item forms and column naming.

The questionnaire is administered at four waves. The baseline form (wave 1)
has 21 questions; the follow-up form used at waves 2-4 inserts two new
questions, so it has 23. Dataset columns are named by position
(``i{position}_w{wave}``), which means the same position can hold different
questions at different waves. ``relabel_items`` maps position labels to
question-identity labels.
"""

WAVES = (1, 2, 3, 4)
ITEMS_PER_WAVE = {1: 21, 2: 23, 3: 23, 4: 23}
N_ITEMS = sum(ITEMS_PER_WAVE.values())  # 90
N_LATENT = N_ITEMS + 2  # items + x + z

# Maximum number of missing items for a defined score under rule 2
MISSING_THRESHOLD = {1: 10, 2: 11, 3: 11, 4: 11}

COVARIATES = ['x', 'z']
ID_COLUMN = 'id'

BASELINE_FORM = list(range(1, 22))
# Follow-up form: question 22 after position 7, question 23 after position 14
FOLLOWUP_FORM = BASELINE_FORM[:7] + [22] + BASELINE_FORM[7:13] + [23] + BASELINE_FORM[13:]
NEW_QUESTIONS = sorted(set(FOLLOWUP_FORM) - set(BASELINE_FORM))


def question_codes(wave):
    """Question codes in the order they are asked at `wave`."""
    return BASELINE_FORM if wave == 1 else FOLLOWUP_FORM


def item_columns(wave):
    """Position-based column names of one wave."""
    return [f'i{pos}_w{wave}' for pos in range(1, ITEMS_PER_WAVE[wave] + 1)]


def all_item_columns(waves=WAVES):
    columns = []
    for wave in waves:
        columns.extend(item_columns(wave))
    return columns


def score_column(wave):
    return f'score{wave}'


def parse_item_column(column):
    """Return (position, wave) of a position-based item column."""
    pos, wave = column[1:].split('_w')
    return int(pos), int(wave)


def relabel_items(columns):
    """Map position-based item columns to question-identity labels.

    Questions asked at every wave become ``q{code}_w{wave}``; questions that
    only exist on the follow-up form become ``qn{code}_w{wave}`` so that they
    can never be read as a baseline question.

    Returns a dict {old_label: new_label}.
    """
    mapping = {}
    for column in columns:
        pos, wave = parse_item_column(column)
        code = question_codes(wave)[pos - 1]
        prefix = 'qn' if code in NEW_QUESTIONS else 'q'
        mapping[column] = f'{prefix}{code}_w{wave}'
    if len(set(mapping.values())) != len(mapping):
        raise ValueError("Relabelled item identifiers are not unique")
    return mapping


def label_wave(label):
    """Wave number of an item label (position- or identity-based)."""
    return int(label.rsplit('_w', 1)[1])

from comicgrade.consensus import aggregate, confirm_defects, council_verdict, voice_grades_from_list
from comicgrade.pipeline_types import SourceGradeResult
from comicgrade.voices import VOICE_WEIGHTS, Voice


def _r(source, grade, confidence=80, defects=()):
    return SourceGradeResult(source=source, grade=grade, confidence=confidence, defects=list(defects))


def test_weighted_consensus_rounds_to_tenth():
    results = [_r("SAGE", 9.0), _r("NYX", 8.5), _r("THORNE", 9.4)]
    c = aggregate(results, VOICE_WEIGHTS)
    # 8.925 rounds half-up to 8.9
    assert c.grade == 8.9
    assert c.confidence == 80
    assert c.participants == 3


def test_defects_need_two_sources():
    results = [
        _r("SAGE", 9.0, defects=["spine_roll", "staple_rust"]),
        _r("NYX", 8.5, defects=["spine roll"]),
        _r("THORNE", 9.4, defects=["cover_crease"]),
    ]
    assert aggregate(results, VOICE_WEIGHTS).confirmed_defects == frozenset({"spine_roll"})


def test_repeated_tag_from_one_source_counts_once():
    results = [_r("SAGE", 9.0, defects=["edge_wear", "edge wear"]), _r("NYX", 8.5)]
    assert confirm_defects(results) == frozenset()


def test_no_valid_grades_gives_neutral_default():
    results = [_r("SAGE", None), _r("NYX", 11.0), _r("THORNE", 0.2, defects=["spine_roll"])]
    c = aggregate(results)
    assert c.grade == 7.0
    assert c.confidence == 50
    assert c.confirmed_defects == frozenset()

    empty = aggregate([])
    assert (empty.grade, empty.confidence) == (7.0, 50)


def test_partial_participation_is_normalised():
    c = aggregate([_r("SAGE", 9.0, 90), _r("THORNE", 8.0, 60)], VOICE_WEIGHTS)
    # (9.0*40 + 8.0*25) / 65 = 8.615...
    assert c.grade == 8.6
    # (90*40 + 60*25) / 65 = 78.46...
    assert c.confidence == 78


def test_invalid_sources_do_not_confirm_defects():
    results = [
        _r("SAGE", 9.0, defects=["cover_tear"]),
        _r("NYX", None, defects=["cover_tear"]),
    ]
    assert aggregate(results, VOICE_WEIGHTS).confirmed_defects == frozenset()


def test_unknown_source_uses_default_weight():
    # claude 35, unknown 10
    c = aggregate([_r("claude", 9.0), _r("mystery-model", 8.0)], {"claude": 35.0})
    assert c.grade == 8.8


def test_result_always_in_range():
    c = aggregate([_r("a", 10.0, 250), _r("b", 10.0, 300)])
    assert 0.5 <= c.grade <= 10.0
    assert 0 <= c.confidence <= 100


def test_council_stated_final_wins():
    v = council_verdict({Voice.SAGE: 9.0, Voice.NYX: 8.5, Voice.THORNE: 9.4}, stated_final=9.2)
    assert v.final_grade == 9.2
    assert v.stated is True
    assert v.dissent is True


def test_council_blend_without_stated_final():
    v = council_verdict({Voice.SAGE: 9.0, Voice.NYX: 8.5, Voice.THORNE: 9.4})
    assert v.final_grade == 8.9
    assert v.stated is False


def test_council_spread_of_exactly_point_three_is_not_dissent():
    v = council_verdict({Voice.SAGE: 9.0, Voice.NYX: 9.3})
    assert v.dissent is False
    assert council_verdict({Voice.SAGE: 9.0}).dissent is False


def test_council_falls_back_when_nobody_votes():
    v = council_verdict({}, stated_final=None, fallback_grade=8.4)
    assert v.final_grade == 8.4
    assert v.voice_grades == {}


def test_voice_grades_from_list_is_positional():
    grades = voice_grades_from_list(["9.2", 8.8, "n/a"])
    assert grades[Voice.SAGE] == 9.2
    assert grades[Voice.NYX] == 8.8
    assert grades[Voice.THORNE] is None

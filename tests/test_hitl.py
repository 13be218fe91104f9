import pytest

from incremental.discovery import RuleDiscoveryEngine
from incremental.hitl import (
    HITLQuestionGenerator, HITLWorkflowService, HITLDecisionLogger, HITLError, question_id_for
)
from incremental.models import (
    HITLAnswer, HITLDecisionLog, ActionType, QuestionType, ApprovalState, RuleLockedError
)


@pytest.fixture
def age_rule(churn_df):
    rules = RuleDiscoveryEngine().discover(churn_df, stage=1)
    return next(r for r in rules if r.id == "missing_value_strategy:Age")


@pytest.fixture
def city_rule(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    return next(r for r in rules if r.id == "category_mapping:City")


def test_question_for_missing_numeric_values(age_rule, churn_df):
    question = HITLQuestionGenerator().generate(age_rule, churn_df)

    assert question.id == "HITL_missing_value_strategy:Age" == question_id_for(age_rule)
    assert question.question_type == QuestionType.MULTIPLE_CHOICE
    assert [o.key for o in question.options] == ["A", "B", "C", "D", "E"]
    assert question.get_option(question.recommended_option).action == ActionType.IMPUTE_MEDIAN
    assert sum(o.is_recommended for o in question.options) == 1
    assert "150 affected records in 'Age'" in question.context
    assert "Statistics:" in question.context


def test_only_unresolved_hitl_rules_get_questions(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    generator = HITLQuestionGenerator()
    questions = generator.generate_all(rules, messy_df)
    assert {q.rule_id for q in questions} == {r.id for r in rules if r.requires_hitl}

    for rule in rules:
        rule.approve()
    assert generator.generate_all(rules, messy_df) == []


def test_answer_approves_rule_and_logs_decision(age_rule, churn_df):
    service = HITLWorkflowService("s1")
    question = service.generator.generate(age_rule, churn_df)
    answer = HITLAnswer(question_id=question.id, selected_option="B", time_to_decide=4.0)

    decision = service.apply_answer(question, answer, age_rule, user_id="analyst")

    assert age_rule.approval_state == ApprovalState.APPROVED
    assert age_rule.parameters["action"] == "impute_mean"
    assert age_rule.user_feedback == "impute_mean: Impute with mean"
    assert decision.id == "DEC_s1_0001"
    assert decision.user_id == "analyst"
    assert not decision.followed_recommendation
    assert decision.notes.startswith("Overrode recommendation")
    assert service.decision_log.get_decisions("s1") == [decision]


def test_keep_as_is_rejects_rule(city_rule, messy_df):
    service = HITLWorkflowService("s1")
    question = service.generator.generate(city_rule, messy_df)
    keep = next(o for o in question.options if o.action == ActionType.KEEP_AS_IS)

    service.apply_answer(question, HITLAnswer(question.id, keep.key), city_rule)
    assert city_rule.approval_state == ApprovalState.REJECTED


def test_custom_value_is_required_and_recorded(age_rule, churn_df):
    service = HITLWorkflowService("s1")
    question = service.generator.generate(age_rule, churn_df)
    custom = next(o for o in question.options if o.requires_custom_value)

    with pytest.raises(HITLError):
        service.apply_answer(question, HITLAnswer(question.id, custom.key), age_rule)
    assert age_rule.approval_state == ApprovalState.PENDING

    service.apply_answer(question, HITLAnswer(question.id, custom.key, custom_value="40"), age_rule)
    assert age_rule.parameters == {"action": "impute_custom", "custom_value": "40"}


def test_mismatched_answers_are_rejected(age_rule, churn_df):
    service = HITLWorkflowService("s1")
    question = service.generator.generate(age_rule, churn_df)
    with pytest.raises(HITLError):
        service.apply_answer(question, HITLAnswer("HITL_other", "A"), age_rule)
    with pytest.raises(HITLError):
        service.apply_answer(question, HITLAnswer(question.id, "Z"), age_rule)


def test_auto_resolve_follows_recommendation(age_rule, churn_df):
    service = HITLWorkflowService("s1")
    question = service.generator.generate(age_rule, churn_df)
    decision = service.auto_resolve(question, age_rule, "skip_hitl")
    assert decision.user_id == "system:skip_hitl"
    assert decision.followed_recommendation
    assert age_rule.parameters["action"] == "impute_median"


def test_applied_rule_is_locked(age_rule):
    age_rule.approve()
    age_rule.applied = True
    with pytest.raises(RuleLockedError):
        age_rule.reject()


def test_decision_log_persists_and_summarises(tmp_path, age_rule, churn_df):
    log = HITLDecisionLogger(tmp_path / "decisions")
    service = HITLWorkflowService("s1", log)
    question = service.generator.generate(age_rule, churn_df)
    service.apply_answer(question, HITLAnswer(question.id, question.recommended_option, time_to_decide=2.0), age_rule)

    assert (tmp_path / "decisions" / "s1.json").exists()

    reloaded = HITLDecisionLogger(tmp_path / "decisions")
    [decision] = reloaded.load("s1")
    assert isinstance(decision, HITLDecisionLog)
    assert decision.approved_rule.parameters["action"] == "impute_median"

    summary = reloaded.summary("s1")
    assert summary.total_decisions == 1
    assert summary.follow_rate == 1.0
    assert summary.average_decision_time == 2.0
    assert summary.action_distribution == {"impute_median": 1}


def test_decision_ids_are_unique_within_a_session(tmp_path, age_rule, churn_df):
    directory = tmp_path / "decisions"
    log = HITLDecisionLogger(directory)
    other = HITLWorkflowService("B", log)
    first = HITLWorkflowService("A", log)
    question = first.generator.generate(age_rule, churn_df)
    answer = HITLAnswer(question.id, question.recommended_option)

    other.apply_answer(question, answer, age_rule)
    other.apply_answer(question, answer, age_rule)
    first.apply_answer(question, answer, age_rule)

    reloaded = HITLDecisionLogger(directory)
    reloaded.load("A")
    resumed = HITLWorkflowService("A", reloaded)
    resumed.apply_answer(question, answer, age_rule)
    resumed.apply_answer(question, answer, age_rule)

    ids = [d.id for d in reloaded.get_decisions("A")]
    assert ids == ["DEC_A_0001", "DEC_A_0002", "DEC_A_0003"]
    assert len(HITLDecisionLogger(directory).load("A")) == 3

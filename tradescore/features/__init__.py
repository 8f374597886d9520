"""Feature importance, selection, interactions and point-in-time safety."""

from .analysis import (
    AblationResult,
    FeatureImportance,
    FeatureImportanceResult,
    PermutationResult,
    ablation_study,
    analyze_feature_importance,
    coefficient_importance,
    combine_importance_scores,
    format_importance_report,
    permutation_importance,
)
from .interactions import (
    CANDIDATE_INTERACTIONS,
    InteractionDefinition,
    add_interactions,
    analyze_interactions,
    calculate_interaction,
    create_interaction_coefficients,
    evaluate_interaction,
    format_interaction_report,
    train_with_interactions,
)
from .pipeline import (
    DEFAULT_FEATURE_CONFIG,
    LEAN_FEATURE_CONFIG,
    FeatureConfig,
    apply_feature_config,
    format_pipeline_report,
    load_feature_config,
    run_feature_pipeline,
    save_feature_config,
)
from .pit import (
    EnforcementContext,
    assert_date_not_future,
    create_pit_safe_cache_key,
    format_pit_summary,
    get_pit_stats,
    log_pit_warning,
    pit_enforcement,
    validate_as_of_date,
    validate_feature_vector,
)
from .pit_contracts import (
    FEATURE_PIT_CONTRACTS,
    FeaturePITContract,
    PITStatus,
    get_safe_features,
    get_unsafe_features,
    is_feature_pit_safe,
    validate_pit_safety,
)
from .selection import (
    FeatureSelectionConfig,
    calculate_correlation_matrix,
    create_reduced_coefficients,
    create_reduced_dataset,
    evaluate_feature_selection,
    find_correlated_pairs,
    format_selection_report,
    select_by_correlation,
    select_by_importance,
    select_features,
    train_reduced_model,
)

__all__ = [
    "AblationResult",
    "ablation_study",
    "add_interactions",
    "analyze_feature_importance",
    "analyze_interactions",
    "apply_feature_config",
    "assert_date_not_future",
    "calculate_correlation_matrix",
    "calculate_interaction",
    "CANDIDATE_INTERACTIONS",
    "coefficient_importance",
    "combine_importance_scores",
    "create_interaction_coefficients",
    "create_pit_safe_cache_key",
    "create_reduced_coefficients",
    "create_reduced_dataset",
    "DEFAULT_FEATURE_CONFIG",
    "EnforcementContext",
    "evaluate_feature_selection",
    "evaluate_interaction",
    "FeatureConfig",
    "FeatureImportance",
    "FeatureImportanceResult",
    "FeaturePITContract",
    "FeatureSelectionConfig",
    "FEATURE_PIT_CONTRACTS",
    "find_correlated_pairs",
    "format_importance_report",
    "format_interaction_report",
    "format_pipeline_report",
    "format_pit_summary",
    "format_selection_report",
    "get_pit_stats",
    "get_safe_features",
    "get_unsafe_features",
    "InteractionDefinition",
    "is_feature_pit_safe",
    "LEAN_FEATURE_CONFIG",
    "load_feature_config",
    "log_pit_warning",
    "PermutationResult",
    "permutation_importance",
    "PITStatus",
    "pit_enforcement",
    "run_feature_pipeline",
    "save_feature_config",
    "select_by_correlation",
    "select_by_importance",
    "select_features",
    "train_reduced_model",
    "train_with_interactions",
    "validate_as_of_date",
    "validate_feature_vector",
    "validate_pit_safety",
]

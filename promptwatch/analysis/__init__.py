"""Answer analysis.

  1. Source extraction (URLs, bare domains, native citations)
  2. Structured extraction via the primary provider, validated against a fixed schema
  3. Visibility scoring (pure functions)

Input:  raw model answer + brand + live competitor registry
Output: ExtractionResult and VisibilityMetrics
"""

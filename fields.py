# fields.py - SurveyDesk
# Question keys used by the worker/manager forms that the server reads back.

BRANCH = "اسم الفرع"
# substrings (already normalized) that identify a branch/station key
BRANCH_KEY_HINTS = ("فرع", "محطه")

SATISFACTION = "مدى الرضا عن العمل"
SUPERVISION_FAIRNESS = "الرقابة عادلة؟"
SALARY_ADEQUACY = "الراتب كافٍ؟"
HOURS_ADEQUACY = "ساعات العمل مناسبة؟"
APPRECIATION = "تشعر بالتقدير؟"
JOB_STABILITY = "تشعر بالاستقرار الوظيفي؟"
RECOMMENDATION = "تنصح غيرك بالعمل معنا؟"
VIOLATION_REASONS = "أسباب المخالفات"

NEVER_SATISFIED = "غير راضٍ أبداً"

# dashboard key -> question key, for single-choice answers
SINGLE_CHOICE = {
    "satisfaction": SATISFACTION,
    "supervisionFairness": SUPERVISION_FAIRNESS,
    "salaryAdequacy": SALARY_ADEQUACY,
    "hoursAdequacy": HOURS_ADEQUACY,
    "appreciation": APPRECIATION,
    "jobStability": JOB_STABILITY,
    "recommendation": RECOMMENDATION,
}

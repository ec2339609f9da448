from setuptools import setup

setup(
    name="ai-pr-review",
    version="1.0.0",
    description="AI pull request reviewer with multi-model fallback",
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.28.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    py_modules=[
        "ai_pr_review",
        "model_invoker",
        "model_providers",
        "review_errors",
        "review_prompt",
    ],
    entry_points={
        "console_scripts": [
            "ai-pr-review=ai_pr_review:main",
        ],
    },
)

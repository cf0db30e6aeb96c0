# Services package init
"""
Points Engine — Services Layer
===============================

What:  Business logic between routes (HTTP) and models (persistence).

Service Inventory:
    - LedgerService: the only writer of balances and point transactions
    - PaymentIntakeService: webhook → exactly one BONUS credit
    - ValuationEstimator: model-first, rules-always listing prices
    - LLMService / GeminiService: text generation behind retries + breaker
    - ListingService: price + store a listing, pay the listing bonus
    - ExchangeService: request lifecycle (debit, refund, payout)
    - RecommendationService: best-effort, read-only listing ranking
    - Notifier: post-commit, best-effort user notifications
    - ServiceContainer: builds and owns all of the above

Services never commit on their own behalf except through UnitOfWork, and
never reach for module-level singletons; everything is constructed in
container.build_container().
"""

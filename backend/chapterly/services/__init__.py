# Services package init
"""
Chapterly Backend — Services Layer
====================================

What:  Business logic between routes (HTTP) and the database.
Why:   Routes handle HTTP; services own the credit and purchase rules.
How:   Services take an AsyncSession plus plain values and raise the
       ChapterlyError tree. Provider gateways are injected via
       FastAPI's dependency injection (see dependencies.py).

Service Inventory:
    - catalog:              Fixed credit package list
    - LedgerService:        Account creation, balance, debit/credit with markers
    - BookService:          Book listing, detail, view counter
    - ChapterService:       Chapter reads, free threshold, unlock
    - PaymentProvider:      Interface + ProviderTransaction value object
    - StripeService:        Checkout Sessions, PaymentIntents, webhooks
    - GooglePlayService:    androidpublisher purchase lookup + acknowledge
    - PurchaseService:      Reconciles provider transactions into credits
    - IdentityService:      Supabase Auth REST client
    - AuthService:          Magic link login, profiles, guests, deletion
"""

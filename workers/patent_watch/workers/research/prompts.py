"""Prompt templates for competitor research and infringement scoring."""

PORTFOLIO_SUMMARY = """{owner} holds 97+ patents covering:
1. Blockchain & DLT - Load balancing, transaction sharding, import/export, multi-chain data backups
2. Data Structures & Verification - Immutable data structures with self-references, manifest documents, chain of trust
3. Cryptographic Methods - Separating hashing from proof-of-work, RAM hashing, novel mining approaches
4. AI & Machine Learning - Federated learning model modification, AI-powered data analysis
5. Document Verification - Electronic document authentication via blockchain, multi-signature verification
6. Financial Technology - Programmatic collateralization, asset valuation on blockchain
7. IoT & Device Management - Device usage recordation to blockchains
8. Distributed Computing - Transaction processing, blockchain sharding, consensus mechanisms"""

RESEARCH_PROMPT = """Research the company "{company}" in the {category} space.

Search the web for their products, services, and technology documentation. I need:
1. Their official website URL
2. A description of the company
3. Their key products and services with REAL URLs to actual product/documentation pages
4. Alternative company names or aliases

Return your findings as JSON in this format:
```json
{{
  "officialName": "Company legal name",
  "aliases": ["alt names"],
  "websiteUrl": "https://...",
  "description": "What the company does",
  "technologyStack": ["key technologies they use"],
  "products": [
    {{
      "name": "Product name",
      "url": "https://real-url-to-product-page",
      "description": "What this product does and its key technical features",
      "category": "Platform|Protocol|Infrastructure|Trading|Analytics|Security|Wallet|DeFi|Tokenization|Other"
    }}
  ]
}}
```

CRITICAL: Only include URLs you actually found in search results. Every URL must be a real, currently accessible page. Include 3-8 products/services focused on blockchain, DLT, cryptography, data verification, or financial technology."""

ANALYSIS_PROMPT = """You are a patent infringement analyst. Analyze this competitor against {owner}'s patent portfolio.

PATENT PORTFOLIO:
{portfolio}

COMPETITOR: {competitor}
Website: {website}
Description: {description}
Technology Stack: {technology}

COMPETITOR PRODUCTS & SERVICES:
{products}
{uploaded}{patents}
Analyze each product/service for potential infringement on {owner}'s patents. Consider:
- Direct technology overlap (same blockchain techniques, data structures, verification methods)
- Functional equivalence (different implementation but same patented concept)
- Use of patented methods (hashing approaches, sharding, load balancing, federated learning)

Return ONLY valid JSON:
```json
{{
  "settlementProbability": <0-100>,
  "settlementFactors": [
    {{"factor": "Factor name", "impact": "positive|negative|neutral", "detail": "Why this affects settlement likelihood"}}
  ],
  "companyRisk": "High|Medium|Low",
  "products": [
    {{
      "name": "Exact product/service name from the list above",
      "infringementProbability": <0-100>,
      "relevantPatents": ["Which portfolio patent areas overlap"],
      "reasoning": "2-3 sentences explaining the infringement risk with specific technical overlap"
    }}
  ]
}}
```

SCORING GUIDELINES:
- settlementProbability: Startups with limited funding 60-80%, large well-funded companies 20-40%
- infringementProbability: Products directly implementing patented concepts = 60-90%. Tangentially related = 20-50%. Unrelated = 0-15%.
- Include 3-5 settlement factors
- Be specific in reasoning and cite which portfolio patent areas overlap"""


def research_prompt(company: str, category: str) -> str:
    return RESEARCH_PROMPT.format(company=company, category=category)


def analysis_prompt(owner: str, competitor: str, website: str, description: str, technology: str,
                    products: str, uploaded: str, patents: str) -> str:
    return ANALYSIS_PROMPT.format(
        owner=owner,
        portfolio=PORTFOLIO_SUMMARY.format(owner=owner),
        competitor=competitor,
        website=website,
        description=description,
        technology=technology or "Unknown",
        products=products or "No product data available",
        uploaded=f"\nUSER-UPLOADED COMPETITOR DOCUMENTATION:\n{uploaded}\n" if uploaded else "",
        patents=f"\nCOMPETITOR PATENTS (from USPTO):\n{patents}\n" if patents else "",
    )

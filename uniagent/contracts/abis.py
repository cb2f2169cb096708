"""
Smart contract ABIs for the deployed AgentRegistry.

Only the read-only functions used by discovery are listed.
"""

_SKILL_COMPONENTS = [
    {"internalType": "string", "name": "id", "type": "string"},
    {"internalType": "string", "name": "name", "type": "string"},
    {"internalType": "string", "name": "description", "type": "string"},
]

_PAYMENT_COMPONENTS = [
    {"internalType": "address", "name": "tokenAddress", "type": "address"},
    {"internalType": "address", "name": "receiverAddress", "type": "address"},
    {"internalType": "uint256", "name": "pricePerCall", "type": "uint256"},
    {"internalType": "string", "name": "chain", "type": "string"},
]

# Field order of the on-chain AgentCard struct
AGENT_CARD_FIELDS = [
    "agentId",
    "name",
    "description",
    "url",
    "version",
    "defaultInputModes",
    "defaultOutputModes",
    "skills",
    "owner",
    "isActive",
    "createdAt",
    "totalRatings",
    "ratingCount",
    "payment",
    "category",
    "imageUrl",
]

AGENT_CARD_COMPONENTS = [
    {"internalType": "bytes32", "name": "agentId", "type": "bytes32"},
    {"internalType": "string", "name": "name", "type": "string"},
    {"internalType": "string", "name": "description", "type": "string"},
    {"internalType": "string", "name": "url", "type": "string"},
    {"internalType": "string", "name": "version", "type": "string"},
    {"internalType": "string[]", "name": "defaultInputModes", "type": "string[]"},
    {"internalType": "string[]", "name": "defaultOutputModes", "type": "string[]"},
    {
        "components": _SKILL_COMPONENTS,
        "internalType": "struct AgentRegistry.Skill[]",
        "name": "skills",
        "type": "tuple[]",
    },
    {"internalType": "address", "name": "owner", "type": "address"},
    {"internalType": "bool", "name": "isActive", "type": "bool"},
    {"internalType": "uint256", "name": "createdAt", "type": "uint256"},
    {"internalType": "uint256", "name": "totalRatings", "type": "uint256"},
    {"internalType": "uint256", "name": "ratingCount", "type": "uint256"},
    {
        "components": _PAYMENT_COMPONENTS,
        "internalType": "struct AgentRegistry.PaymentInfo",
        "name": "payment",
        "type": "tuple",
    },
    {"internalType": "string", "name": "category", "type": "string"},
    {"internalType": "string", "name": "imageUrl", "type": "string"},
]

# AgentRegistry ABI
AGENT_REGISTRY_ABI = [
    {
        "inputs": [{"internalType": "string", "name": "category", "type": "string"}],
        "name": "getActiveAgentsByCategory",
        "outputs": [{"internalType": "bytes32[]", "name": "", "type": "bytes32[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getAllAgentIds",
        "outputs": [{"internalType": "bytes32[]", "name": "", "type": "bytes32[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "agentId", "type": "bytes32"}],
        "name": "getAgentCard",
        "outputs": [
            {
                "components": AGENT_CARD_COMPONENTS,
                "internalType": "struct AgentRegistry.AgentCard",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

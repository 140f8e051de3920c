"""Schema v1 - Initial marketplace schema.

This version includes tables for:
- Per-signer nonces
- Listings and bids with their applied chain event flags
- Transaction audit records and purchases
- Collection registry with derived floor price and volume
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'nonces',
            'columns': [
                {'name': 'signer_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'nonce', 'type': 'INT8', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'RESERVED'"},
                {'name': 'order_id', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['signer_address', 'nonce'],
            'checks': [
                "status IN ('RESERVED', 'USED')",
                "nonce >= 0"
            ]
        },
        {
            'name': 'collections',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'contract_address', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'name', 'type': 'TEXT'},
                {'name': 'floor_price', 'type': 'DECIMAL'},
                {'name': 'total_volume', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
                {'name': 'sales_count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'nft_contract', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'maker', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'nonce', 'type': 'INT8', 'nullable': False},
                {'name': 'signature', 'type': 'TEXT'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'ACTIVE'"},
                {'name': 'applied_events', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'buyer', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "status IN ('ACTIVE', 'SOLD', 'CANCELLED')",
                "price > 0",
                "token_id >= 0"
            ],
            'indexes': [
                {
                    'name': 'idx_listings_one_active',
                    'columns': ['nft_contract', 'token_id', 'maker'],
                    'unique': True,
                    'where': "status = 'ACTIVE'"
                },
                {'name': 'idx_listings_maker_nonce', 'columns': ['maker', 'nonce'], 'unique': True},
                {'name': 'idx_listings_contract_status', 'columns': ['nft_contract', 'status']}
            ]
        },
        {
            'name': 'bids',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'contract_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'bidder_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'PLACED'"},
                {'name': 'applied_events', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'listing_id', 'type': 'UUID'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "status IN ('PLACED', 'ACCEPTED', 'WITHDRAWN')",
                "amount > 0"
            ],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'}
            ],
            'indexes': [
                {
                    'name': 'idx_bids_one_placed',
                    'columns': ['contract_address', 'token_id', 'bidder_address'],
                    'unique': True,
                    'where': "status = 'PLACED'"
                },
                {'name': 'idx_bids_item', 'columns': ['contract_address', 'token_id']}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'tx_hash', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'method', 'type': 'TEXT', 'nullable': False},
                {'name': 'contract_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'from_address', 'type': 'TEXT'},
                {'name': 'to_address', 'type': 'TEXT'},
                {'name': 'price', 'type': 'DECIMAL'},
                {'name': 'block_hash', 'type': 'TEXT'},
                {'name': 'block_number', 'type': 'INT8'},
                {'name': 'gas_used', 'type': 'DECIMAL'},
                {'name': 'gas_price', 'type': 'DECIMAL'},
                {'name': 'cumulative_gas_used', 'type': 'DECIMAL'},
                {'name': 'txn_fee', 'type': 'DECIMAL'},
                {'name': 'outcome', 'type': 'TEXT', 'nullable': False, 'default': "'applied'"},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "outcome IN ('applied', 'orphan')"
            ],
            'indexes': [
                {'name': 'idx_transactions_item', 'columns': ['contract_address', 'token_id']}
            ]
        },
        {
            'name': 'purchases',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'listing_id', 'type': 'UUID', 'nullable': False},
                {'name': 'bid_id', 'type': 'UUID'},
                {'name': 'buyer_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'DECIMAL', 'nullable': False},
                {'name': 'tx_hash', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'},
                {'columns': ['bid_id'], 'references': 'bids(id)'}
            ],
            'indexes': [
                {'name': 'idx_purchases_buyer', 'columns': ['buyer_address']}
            ]
        }
    ],
    'migrations': []
}

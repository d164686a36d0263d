from datetime import datetime, timedelta, timezone

import pytest

from shield_agent.signals import (
    build_team_wallet_signal, parse_defi_metrics, parse_explorer_balance, parse_explorer_outflows,
    parse_github_repo, parse_goplus_security, parse_tvl_history
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WALLET = "0x25f2226b597e8f9514b3f68f00f494cf4f286491"


class TestTvlHistory:

    def test_valid_payload(self):
        signal = parse_tvl_history({"currentTvl": "1250000.5", "tvlChangePercent": -12.5})
        assert signal.current_tvl == 1250000.5
        assert signal.tvl_change_percent == -12.5
        assert signal.defaulted is False

    @pytest.mark.parametrize("payload", [None, [], {"currentTvl": 10}, {"tvlChangePercent": "nan"}])
    def test_unusable_payload(self, payload):
        signal = parse_tvl_history(payload)
        assert signal.defaulted is True
        assert signal.tvl_change_percent == 0.0


class TestGithub:

    def test_days_since_push(self):
        payload = {"pushed_at": "2026-02-19T08:30:00Z", "open_issues_count": 41}
        signal = parse_github_repo(payload, now=NOW)
        assert signal.last_push_days_ago == 10
        assert signal.open_issues == 41
        assert signal.defaulted is False

    def test_future_push_clamps_to_zero(self):
        future = (NOW + timedelta(days=3)).isoformat()
        assert parse_github_repo({"pushed_at": future}, now=NOW).last_push_days_ago == 0

    @pytest.mark.parametrize("payload", [{}, {"pushed_at": "yesterday"}, "rate limited"])
    def test_missing_push_date_is_treated_as_abandoned(self, payload):
        signal = parse_github_repo(payload, now=NOW)
        assert signal.defaulted is True
        assert signal.last_push_days_ago == 999


class TestGoplusSecurity:

    def test_flags(self):
        payload = {
            "code": 1,
            "result": {
                "0x7fc66500c84a76ad7e9c93437bfc5ac33e2ddae9": {
                    "is_honeypot": "0",
                    "is_open_source": "1",
                    "is_proxy": "1",
                    "owner_change_balance": "1",
                    "is_mintable": "0"
                }
            }
        }
        signal = parse_goplus_security(payload)
        assert signal.is_honeypot is False
        assert signal.is_open_source is True
        assert signal.is_proxy is True
        assert signal.owner_can_change_balance is True
        assert signal.is_mintable is False
        assert signal.defaulted is False

    def test_missing_flags_are_not_open_source(self):
        signal = parse_goplus_security({"code": 1, "result": {"0xabc": {}}})
        assert signal.is_open_source is False

    @pytest.mark.parametrize("payload", [
        {"code": 4029, "message": "too many requests"},
        {"code": 1, "result": {}},
        {"code": 1, "result": {"0xabc": "broken"}},
        None,
    ])
    def test_unusable_payload_defaults_to_clean(self, payload):
        signal = parse_goplus_security(payload)
        assert signal.defaulted is True
        assert signal.is_honeypot is False
        assert signal.is_open_source is True


class TestExplorer:

    def test_balance(self):
        assert parse_explorer_balance({"status": "1", "result": "2500000000000000000"}) == 2.5

    @pytest.mark.parametrize("payload", [
        {"status": "0", "message": "NOTOK", "result": "Invalid API Key"},
        {"status": "1", "result": "not-a-number"},
        None,
    ])
    def test_balance_unavailable(self, payload):
        assert parse_explorer_balance(payload) is None

    def tx(self, value_eth, days_ago, sender=WALLET):
        return {
            "from": sender,
            "value": str(int(value_eth * 10 ** 18)),
            "timeStamp": str(int((NOW - timedelta(days=days_ago)).timestamp()))
        }

    def test_recent_large_outflow(self):
        payload = {"status": "1", "result": [self.tx(1, 1), self.tx(150, 2)]}
        assert parse_explorer_outflows(payload, WALLET, 100, 7, now=NOW) is True

    def test_old_or_small_or_incoming_transfers_do_not_count(self):
        payload = {"status": "1", "result": [
            self.tx(500, 30),
            self.tx(99, 1),
            self.tx(1000, 1, sender="0x0000000000000000000000000000000000000001"),
        ]}
        assert parse_explorer_outflows(payload, WALLET, 100, 7, now=NOW) is False

    def test_empty_history(self):
        payload = {"status": "0", "message": "No transactions found", "result": []}
        assert parse_explorer_outflows(payload, WALLET, 100, 7, now=NOW) is False

    def test_error_is_unknown(self):
        payload = {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
        assert parse_explorer_outflows(payload, WALLET, 100, 7, now=NOW) is None

    def test_team_wallet_needs_both_parts(self):
        assert build_team_wallet_signal(3.0, None).defaulted is True
        assert build_team_wallet_signal(None, True).defaulted is True

        signal = build_team_wallet_signal(3.0, True)
        assert signal.defaulted is False
        assert signal.recent_large_outflows is True
        assert signal.balance_eth == 3.0


class TestDefiMetrics:

    def test_both_markets(self):
        payload = {
            "aave": {"totalSupplied": "1000", "totalBorrowed": "870", "supplyApy": 3.1,
                     "borrowApy": 4.9, "utilization": 87.0},
            "compound": {"totalSupply": "500", "totalBorrow": "100", "supplyApr": 2.2,
                         "borrowApr": 3.8, "utilization": 20.0}
        }
        signal = parse_defi_metrics(payload)
        assert signal.aave.total_borrowed == "870"
        assert signal.aave.supply_rate == 3.1
        assert signal.compound.total_supplied == "500"
        assert signal.compound.borrow_rate == 3.8
        assert signal.utilization_for("AaveAdapter") == 87.0
        assert signal.utilization_for("CompoundAdapter") == 20.0
        assert signal.utilization_for("MorphoAdapter") is None

    def test_no_markets(self):
        assert parse_defi_metrics({"morpho": {}}).defaulted is True
        assert parse_defi_metrics("oops").defaulted is True

import sys

sys.path.insert(0, '.')

import pytest

from analytics.aggregation import (
    AggregationEngine,
    DerivedStats,
    SymbolSentiment,
    classify_stance,
    compute_open_positions,
    compute_pnl_series,
    compute_sentiment,
    compute_signal_board,
    compute_stats,
)
from ingest.flow_types import EventKind, FlowEvent, Position, SignalSummary, Snapshot


def _flow(symbol, stance):
    return FlowEvent(event_kind=EventKind.TRADE, symbol=symbol, stance_score=stance)


def _closed(dollar_pnl=None, pnl=None):
    return Position(symbol='SPY', status='CLOSED', dollar_pnl=dollar_pnl, pnl=pnl)


def test_stats_over_mixed_closed_trades():
    positions = [_closed(100), _closed(-50), Position(symbol='QQQ', status='OPEN')]
    stats = compute_stats(positions)
    assert stats == DerivedStats(total_pnl=50, win_rate=50.0, total_trades=2, open_positions=1)


def test_stats_without_closed_positions_has_zero_win_rate():
    stats = compute_stats([Position(status='OPEN'), Position(status='OPEN')])
    assert stats.win_rate == 0
    assert stats.total_trades == 0
    assert stats.total_pnl == 0
    assert stats.open_positions == 2
    assert compute_stats([]) == DerivedStats()


def test_stats_win_uses_percentage_pnl_when_present():
    # pnl is the backend's percentage result; dollar P&L still drives totals
    stats = compute_stats([_closed(dollar_pnl=0, pnl=12.5), _closed(dollar_pnl=None, pnl=-3.0)])
    assert stats.win_rate == 50.0
    assert stats.total_pnl == 0


def test_stats_open_count_from_separate_collection():
    closed_orders = [_closed(20), Position(status='OPEN')]
    positions = [Position(status='OPEN'), Position(status='OPEN'), _closed(5)]
    stats = compute_stats(closed_orders, positions)
    assert stats.total_trades == 1
    assert stats.total_pnl == 20
    assert stats.open_positions == 2


@pytest.mark.parametrize('score,bucket', [
    (45, 'bullish'),
    (-40, 'bearish'),
    (0, 'neutral'),
    (30, 'neutral'),
    (-30, 'neutral'),
    (30.0001, 'bullish'),
])
def test_sentiment_thresholds_are_exclusive(score, bucket):
    sentiment = compute_sentiment([_flow('SPY', score)])
    assert getattr(sentiment['SPY'], bucket) == 1
    assert sentiment['SPY'].total == 1


def test_sentiment_groups_by_symbol_and_buckets_unknown():
    flows = [_flow('SPY', 45), _flow(None, -80), _flow('SPY', -40), _flow('QQQ', 5), _flow('SPY', 10)]
    sentiment = compute_sentiment(flows)
    assert list(sentiment) == ['SPY', 'UNKNOWN', 'QQQ']
    assert sentiment['SPY'] == SymbolSentiment(bullish=1, bearish=1, neutral=1)
    assert sentiment['UNKNOWN'] == SymbolSentiment(bearish=1)
    assert sentiment['QQQ'] == SymbolSentiment(neutral=1)


def test_custom_thresholds():
    sentiment = compute_sentiment([_flow('SPY', 15)], bullish_threshold=10, bearish_threshold=-10)
    assert sentiment['SPY'].bullish == 1
    assert classify_stance(-15, 10, -10) == 'bearish'


def test_pnl_series_keeps_snapshot_order():
    positions = [_closed(10), Position(status='OPEN', dollar_pnl=999), _closed(-5), _closed(20)]
    series = compute_pnl_series(positions)
    assert [p.cumulative for p in series] == [10, 5, 25]
    assert [p.pnl for p in series] == [10, -5, 20]
    assert [p.trade for p in series] == [1, 2, 3]


def test_missing_dollar_pnl_counts_as_zero():
    series = compute_pnl_series([_closed(None), _closed(7)])
    assert [p.cumulative for p in series] == [0, 7]


def test_derivations_are_repeatable():
    flows = [_flow('SPY', 50), _flow('QQQ', -50)]
    positions = [_closed(10), _closed(-4), Position(status='OPEN')]
    assert compute_sentiment(flows) == compute_sentiment(flows)
    assert compute_stats(positions) == compute_stats(positions)
    assert compute_pnl_series(positions) == compute_pnl_series(positions)


def test_signal_board_covers_watchlist():
    signals = {'SPY': SignalSummary(count=4, avg_stance=42.0), 'AAPL': SignalSummary(count=1, avg_stance=-31)}
    board = compute_signal_board(signals, ['SPY', 'QQQ', 'AAPL'])
    assert [e.symbol for e in board] == ['SPY', 'QQQ', 'AAPL']
    assert board[0].stance == 'bullish' and board[0].count == 4
    assert not board[1].has_signal and board[1].stance == 'neutral'
    assert board[2].stance == 'bearish'


def test_open_position_rows():
    positions = [
        Position(symbol='SPY', strike=450, status='OPEN', entry_price=2.0, current_price=2.5),
        _closed(10),
        Position(symbol='QQQ', strike=380, status='OPEN', entry_price=4.0, current_price=1.0),
        Position(symbol='TSLA', strike=200, status='OPEN', entry_price=None, current_price=3.0),
    ]
    rows = compute_open_positions(positions)
    assert [r.key for r in rows] == ['SPY-450-0', 'QQQ-380-1', 'TSLA-200-2']
    assert rows[0].pnl_pct == pytest.approx(25.0)
    assert rows[0].progress == pytest.approx(50.0)
    assert rows[1].pnl_pct == pytest.approx(-75.0)
    assert rows[1].progress == 100.0
    assert rows[2].pnl_pct == 0.0


def test_engine_uses_recent_orders_for_closed_stats_and_positions_for_the_rest():
    snapshot = Snapshot(
        enabled=True,
        positions=(Position(status='OPEN'), _closed(3)),
        recent_orders=(_closed(100), _closed(-50)),
        signals={'SPY': SignalSummary(2, 35)},
        sequence=1,
    )
    engine = AggregationEngine(watchlist=['SPY'])
    view = engine.compute((_flow('SPY', 90),), snapshot)
    assert view.stats == DerivedStats(total_pnl=50, win_rate=50.0, total_trades=2, open_positions=1)
    assert [p.cumulative for p in view.pnl_series] == [3]
    assert len(view.open_rows) == 1
    assert view.sentiment['SPY'].bullish == 1
    assert view.signal_board[0].stance == 'bullish'


def test_engine_rejects_inverted_thresholds():
    with pytest.raises(ValueError):
        AggregationEngine(bullish_threshold=-10, bearish_threshold=10)


def test_position_without_status_is_neither_open_nor_closed():
    snapshot = Snapshot.from_wire({
        'positions': [{'symbol': 'SPY', 'strike': 500}, {'symbol': 'QQQ', 'status': 'open'}],
        'recentOrders': [{'symbol': 'SPY', 'dollarPnl': 40}],
    })
    untracked = snapshot.positions[0]
    assert untracked.status is None
    assert not untracked.is_open and not untracked.is_closed

    view = AggregationEngine().compute((), snapshot)
    assert view.stats.open_positions == 1
    assert view.stats.total_trades == 0
    assert [row.position.symbol for row in view.open_rows] == ['QQQ']
    assert view.pnl_series == ()

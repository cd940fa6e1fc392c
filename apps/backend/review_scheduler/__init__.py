"""Spaced-repetition review scheduler for exam-prep wrong answers.

誤答した問題を間隔反復で再出題するためのバックエンド。
"""
